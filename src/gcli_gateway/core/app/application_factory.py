"""
Application factory for creating the FastAPI application.

``build_app`` wires the gateway: the lifespan loads the credential pool,
creates the shared ``httpx.AsyncClient`` and the services, and on shutdown
flushes credential state and closes the client. Collaborators can be
injected for tests.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI

from gcli_gateway import __version__
from gcli_gateway.connectors.code_assist import CodeAssistConnector
from gcli_gateway.core.app.controllers import chat_controller, models_controller
from gcli_gateway.core.app.controllers.chat_controller import ChatController
from gcli_gateway.core.app.controllers.models_controller import ModelsController
from gcli_gateway.core.app.exception_handlers import register_exception_handlers
from gcli_gateway.core.common.logging_utils import register_secrets
from gcli_gateway.core.config.app_config import AppConfig
from gcli_gateway.core.domain.credentials import CredentialSeed
from gcli_gateway.core.interfaces.credential_state_store_interface import (
    ICredentialStateStore,
)
from gcli_gateway.core.interfaces.token_refresher_interface import ITokenRefresher
from gcli_gateway.core.interfaces.upstream_caller_interface import IUpstreamCaller
from gcli_gateway.core.security.middleware import PasswordAuthMiddleware
from gcli_gateway.core.services.chat_service import ChatService
from gcli_gateway.core.services.credential_loader import load_credentials_dir
from gcli_gateway.core.services.credential_manager import (
    CooldownPolicy,
    CredentialManager,
)
from gcli_gateway.core.services.state_store import JsonFileStateStore
from gcli_gateway.core.services.token_refresher import GoogleTokenRefresher
from gcli_gateway.core.services.translation_service import TranslationService
from gcli_gateway.core.services.usage_estimation import create_usage_estimator

logger = logging.getLogger(__name__)


def build_app(
    config: AppConfig | dict[str, Any] | None = None,
    *,
    credentials: Iterable[CredentialSeed] | None = None,
    state_store: ICredentialStateStore | None = None,
    refresher: ITokenRefresher | None = None,
    upstream: IUpstreamCaller | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: The application configuration (AppConfig object or dict)
        credentials: Credentials to use instead of reading ``credentials_dir``
        state_store: Status store to use instead of the JSON state file
        refresher: Token refresher to use instead of the Google endpoint
        upstream: Upstream caller to use instead of the Code Assist connector

    Returns:
        The FastAPI ASGI application instance.
    """
    if config is None:
        config = AppConfig()
    elif isinstance(config, dict):
        config = AppConfig(**config)

    register_secrets([config.password])

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        client = httpx.AsyncClient(timeout=config.request_timeout)
        assert config.state_file is not None
        store = state_store or JsonFileStateStore(config.state_file)
        manager = CredentialManager(
            refresher or GoogleTokenRefresher(client, config.token_url),
            store,
            calls_per_rotation=config.calls_per_rotation,
            refresh_margin_seconds=config.refresh_margin_seconds,
            cooldown_policy=CooldownPolicy(
                base_seconds=config.cooldown.base_seconds,
                multiplier=config.cooldown.multiplier,
                max_seconds=config.cooldown.max_seconds,
            ),
            disable_threshold=config.disable_threshold,
        )
        seeds = (
            list(credentials)
            if credentials is not None
            else load_credentials_dir(
                config.credentials_dir, exclude=[config.state_file]
            )
        )
        manager.initialize(seeds)
        if manager.pool_size == 0:
            logger.warning(
                "No credentials loaded from %s; requests will fail until "
                "credential files are added and the gateway is restarted",
                config.credentials_dir,
            )

        translator = TranslationService(
            usage_estimator=create_usage_estimator(config.usage_estimator.value),
            max_output_tokens_cap=config.max_output_tokens_cap,
        )
        caller = upstream or CodeAssistConnector(
            client,
            config.code_assist_endpoint,
            config.request_timeout,
            translator=translator,
            onboard_poll_interval=config.onboard_poll_interval,
        )
        chat_service = ChatService(
            manager,
            caller,
            translator,
            max_retries=config.max_retries,
            fake_stream_config=config.fake_stream,
            onboard_credentials=config.onboard_credentials,
        )

        app.state.http_client = client
        app.state.credential_manager = manager
        app.state.chat_service = chat_service
        app.state.chat_controller = ChatController(chat_service)
        logger.info("Application startup complete (listening on %s)", config.bind_address)
        try:
            yield
        finally:
            logger.info("Shutting down application")
            await manager.aclose()
            await client.aclose()

    app = FastAPI(title="gcli-gateway", version=__version__, lifespan=lifespan)
    app.state.app_config = config
    app.state.models_controller = ModelsController(config)

    app.add_middleware(PasswordAuthMiddleware, password=config.password)
    register_exception_handlers(app)
    app.include_router(chat_controller.router)
    app.include_router(models_controller.router)
    return app
