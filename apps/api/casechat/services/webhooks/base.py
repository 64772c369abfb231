"""Webhook handler interface."""

from __future__ import annotations

from typing import Protocol

from fastapi import Request, Response
from sqlalchemy.orm import Session


class WebhookHandler(Protocol):
    async def handle(self, request: Request, db: Session) -> Response:
        """Handle a provider delivery and build the acknowledgement."""
