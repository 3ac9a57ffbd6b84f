"""
Models Controller

Handles model listing and the operational endpoints of the gateway.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request

from gcli_gateway import __version__
from gcli_gateway.core.config.app_config import AppConfig
from gcli_gateway.core.domain.model_utils import list_model_ids
from gcli_gateway.core.services.credential_manager import CredentialManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["models"])

SERVICE_NAME = "gcli-gateway"


class ModelsController:
    """Controller for model-related endpoints."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def list_models(self) -> dict[str, Any]:
        """List every configured model, including the synthesized-stream variants."""
        created = int(time.time())
        ids = list_model_ids(self._config.models, self._config.fake_stream.suffix)
        return {
            "object": "list",
            "data": [
                {"id": model_id, "object": "model", "created": created, "owned_by": "google"}
                for model_id in ids
            ],
        }


def get_models_controller(request: Request) -> ModelsController:
    return request.app.state.models_controller


def get_credential_manager(request: Request) -> CredentialManager:
    return request.app.state.credential_manager


@router.get("/v1/models")
async def list_models(
    controller: ModelsController = Depends(get_models_controller),
) -> dict[str, Any]:
    return controller.list_models()


@router.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": __version__,
    }


@router.get("/")
async def root() -> dict[str, Any]:
    return {
        "message": "OpenAI-compatible gateway for Gemini Code Assist",
        "version": __version__,
        "endpoints": {"api": "/v1", "health": "/health"},
    }


@router.get("/v1/credentials/status")
async def credentials_status(
    manager: CredentialManager = Depends(get_credential_manager),
) -> dict[str, Any]:
    """Non-secret snapshot of every credential's status and counters."""
    return manager.status_report()
