"""Adapter for the external real-time voice session orchestrator."""

from __future__ import annotations

import abc
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from env_validation import VOICE_PROVIDERS, get_env_float

logger = logging.getLogger(__name__)

DEFAULT_ORCHESTRATOR_URL = "http://localhost:8000"
DEFAULT_VOICE_ID = "Ashley"


class VoiceSessionError(RuntimeError):
    """Raised when a voice session cannot be started."""


@dataclass(frozen=True)
class SessionConfig:
    system_prompt: str
    opening_line: Optional[str] = None
    voice_id: str = DEFAULT_VOICE_ID


@dataclass(frozen=True)
class SessionConnection:
    connection_token: str
    server_endpoint: str
    room_identifier: str

    def as_dict(self) -> Dict[str, str]:
        return {
            "connection_token": self.connection_token,
            "server_endpoint": self.server_endpoint,
            "room_identifier": self.room_identifier,
        }


class VoiceOrchestrator(abc.ABC):
    @abc.abstractmethod
    def start(self, correlation_token: str, caller_identity: str, config: SessionConfig) -> SessionConnection:
        ...

    @abc.abstractmethod
    def end(self, correlation_token: str) -> Dict[str, Any]:
        """Close the session. Must not raise; failures come back as a status dict."""


class HttpVoiceOrchestrator(VoiceOrchestrator):
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or os.getenv("VOICE_ORCHESTRATOR_URL") or DEFAULT_ORCHESTRATOR_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else get_env_float("VOICE_ORCHESTRATOR_TIMEOUT", 10.0)

    def start(self, correlation_token: str, caller_identity: str, config: SessionConfig) -> SessionConnection:
        payload = {
            "correlationToken": correlation_token,
            "userName": caller_identity,
            "systemPrompt": config.system_prompt,
            "openingLine": config.opening_line,
            "voiceId": config.voice_id,
        }
        try:
            r = requests.post(f"{self.base_url}/orchestrator/session/start", json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Voice session start failed token=%s: %s", correlation_token, e, exc_info=True)
            raise VoiceSessionError(f"voice session start failed: {e}") from e

        try:
            return SessionConnection(
                connection_token=str(data["token"]),
                server_endpoint=str(data["serverUrl"]),
                room_identifier=str(data["roomName"]),
            )
        except (KeyError, TypeError) as e:
            logger.error("Voice session start returned unexpected body token=%s: %r", correlation_token, data)
            raise VoiceSessionError("voice session start returned an unexpected body") from e

    def end(self, correlation_token: str) -> Dict[str, Any]:
        try:
            r = requests.post(
                f"{self.base_url}/orchestrator/session/end",
                json={"correlationToken": correlation_token},
                timeout=self.timeout,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            logger.error("Voice session end failed token=%s: %s", correlation_token, e, exc_info=True)
            return {"status": "error", "message": str(e)}
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        data.setdefault("status", "ended")
        return data


class MockVoiceOrchestrator(VoiceOrchestrator):
    """In-process orchestrator for local runs and tests."""

    def __init__(self, server_endpoint: str = "wss://voice.local", fail_start: bool = False):
        self.server_endpoint = server_endpoint
        self.fail_start = fail_start
        self.started: Dict[str, SessionConfig] = {}
        self.ended: list[str] = []

    def start(self, correlation_token: str, caller_identity: str, config: SessionConfig) -> SessionConnection:
        if self.fail_start:
            raise VoiceSessionError("mock orchestrator configured to fail")
        self.started[correlation_token] = config
        return SessionConnection(
            connection_token=f"mock-{uuid.uuid4().hex[:12]}",
            server_endpoint=self.server_endpoint,
            room_identifier=f"room-{correlation_token}",
        )

    def end(self, correlation_token: str) -> Dict[str, Any]:
        self.ended.append(correlation_token)
        return {"status": "ended"}


def get_voice_orchestrator(provider: Optional[str] = None) -> VoiceOrchestrator:
    prov = (provider or os.getenv("VOICE_PROVIDER") or "http").strip().lower()
    if prov not in VOICE_PROVIDERS:
        raise ValueError(f"Unknown voice provider: {prov}")
    if prov == "mock":
        return MockVoiceOrchestrator()
    return HttpVoiceOrchestrator()
