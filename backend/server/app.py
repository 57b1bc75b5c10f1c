"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (engine, OpenAI client, session manager)
- Stop every live call on process shutdown
- Register routes
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI

from adapters.asr.deepgram_streaming import DeepgramEngine
from adapters.llm.assistance import AssistanceGenerator, OpenAIAssistanceGenerator
from config import AppConfig, DeviceConfig
from observability.logger import log_event
from session.manager import CallSessionManager

from server.routes import register_routes


def create_app(
    *,
    config: Optional[AppConfig] = None,
    device_config: Optional[DeviceConfig] = None,
    manager: Optional[CallSessionManager] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with an injected manager
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    device_config = device_config or DeviceConfig.load_from_env()

    if manager is None:
        manager = build_manager(config=config, device_config=device_config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "SERVER_STARTED",
            "env": config.env,
            "device": device_config.device_name,
            "device_mode": device_config.mode.value,
        })
        yield
        await manager.shutdown()
        log_event({"event_type": "SERVER_STOPPED"})

    app = FastAPI(title="Live Call Transcription API", lifespan=lifespan)

    app.state.config = config
    app.state.device_config = device_config
    app.state.manager = manager

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app


def build_manager(*, config: AppConfig, device_config: DeviceConfig) -> CallSessionManager:
    """Wire the production collaborators. One manager per process."""
    engine = DeepgramEngine(
        api_key=config.deepgram_api_key,
        model=config.deepgram_model,
        language=config.deepgram_language,
        sample_rate_hz=device_config.sample_rate_hz,
        connect_timeout_s=config.stream.connect_timeout_s,
    )

    return CallSessionManager(
        config=config,
        device_config=device_config,
        engine=engine,
        assistant=build_assistant(config),
    )


def build_assistant(config: AppConfig) -> Optional[AssistanceGenerator]:
    """Build the assistance generator; calls run transcription-only without a key."""
    if not config.openai_api_key:
        log_event({
            "event_type": "ASSISTANCE_DISABLED",
            "reason": "OPENAI_API_KEY not set",
        })
        return None

    # Create OpenAI client ONCE per process
    client = AsyncOpenAI(api_key=config.openai_api_key)
    return OpenAIAssistanceGenerator(client=client, model=config.llm_model)
