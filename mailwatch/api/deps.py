"""FastAPI dependency-injection helpers for the long-lived services."""

from __future__ import annotations

from fastapi import Request

from mailwatch.classifier import GeminiClassifier
from mailwatch.registry import ListenerRegistry
from mailwatch.sms import SmsGateway
from mailwatch.store import EmailStore, SettingsStore


def get_registry(request: Request) -> ListenerRegistry:
    return request.app.state.registry


def get_email_store(request: Request) -> EmailStore:
    return request.app.state.email_store


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store


def get_gateway(request: Request) -> SmsGateway:
    return request.app.state.gateway


def get_classifier(request: Request) -> GeminiClassifier:
    return request.app.state.classifier
