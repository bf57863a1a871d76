"""Remote inference capability: audio upload, transcription, text generation.

The pipelines only depend on ``InferenceService`` and the error classes
below. ``GeminiInferenceService`` is the shipped HTTP adapter; any object
with the same three coroutines can stand in for it.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import requests

from chunkscribe.config import Settings


logger = logging.getLogger("chunkscribe.inference")


class InferenceError(Exception):
    """Any failure reported by (or while reaching) the inference service."""


class RateLimited(InferenceError):
    """Transient: the service asked us to slow down."""


class AuthenticationFailed(InferenceError):
    pass


class Forbidden(InferenceError):
    pass


class QuotaExceeded(Forbidden):
    pass


class InferenceService(abc.ABC):
    @abc.abstractmethod
    async def upload_audio(self, data: bytes, mime_type: str = "audio/wav", display_name: Optional[str] = None) -> str:
        """Upload audio and return an opaque handle for ``transcribe``."""

    @abc.abstractmethod
    async def transcribe(self, handle: str, prompt: str, mime_type: str = "audio/wav") -> str:
        ...

    @abc.abstractmethod
    async def generate_text(self, prompt: str) -> str:
        ...


def _error_message(body: str) -> Optional[str]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    return None


def raise_for_status(status_code: int, body: str) -> None:
    """Map an HTTP error response onto the inference error taxonomy."""
    if 200 <= status_code < 300:
        return
    message = _error_message(body or "")
    lowered = (body or "").lower()
    if status_code == 429:
        raise RateLimited(message or "Rate limit exceeded. Please wait before retrying.")
    if status_code == 401:
        raise AuthenticationFailed("Invalid API key. Check the inference service credentials.")
    if "quota" in lowered:
        raise QuotaExceeded(
            "Quota exceeded: the inference account has no quota left. "
            "Enable billing or wait for quota allocation."
        )
    if status_code == 403:
        raise Forbidden(message or "Access forbidden. Check the API key permissions.")
    raise InferenceError(f"API error: {status_code} - {message or 'no error details'}")


class GeminiInferenceService(InferenceService):
    """HTTP adapter for a Gemini-style ``files`` + ``generateContent`` API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.0-flash",
        timeout: float = 120.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiInferenceService":
        return cls(
            api_key=settings.inference_api_key,
            base_url=settings.inference_base_url,
            model=settings.inference_model,
            timeout=settings.inference_timeout_s,
        )

    async def upload_audio(self, data: bytes, mime_type: str = "audio/wav", display_name: Optional[str] = None) -> str:
        return await asyncio.to_thread(self._upload_sync, data, mime_type, display_name or "chunk.wav")

    async def transcribe(self, handle: str, prompt: str, mime_type: str = "audio/wav") -> str:
        parts = [
            {"file_data": {"file_uri": handle, "mime_type": mime_type}},
            {"text": prompt},
        ]
        return await asyncio.to_thread(self._generate_sync, parts)

    async def generate_text(self, prompt: str) -> str:
        return await asyncio.to_thread(self._generate_sync, [{"text": prompt}])

    def _upload_sync(self, data: bytes, mime_type: str, display_name: str) -> str:
        url = f"{self.base_url}/upload/v1beta/files"
        metadata = json.dumps({"file": {"display_name": display_name}})
        files = {
            "metadata": (None, metadata, "application/json"),
            "file": (display_name, data, mime_type),
        }
        resp = self._request("POST", url, files=files)
        uri = (resp.get("file") or {}).get("uri")
        if not isinstance(uri, str) or not uri:
            raise InferenceError("Upload response did not include a file URI")
        logger.info("Uploaded audio", extra={"bytes": len(data), "uri": uri})
        return uri

    def _generate_sync(self, parts: list) -> str:
        url = f"{self.base_url}/v1beta/models/{self.model}:generateContent"
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": {"response_mime_type": "text/plain"},
        }
        resp = self._request("POST", url, json=body)
        candidates = resp.get("candidates") or []
        if not candidates:
            raise InferenceError("No candidates in response")
        content_parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in content_parts:
            text = part.get("text") if isinstance(part, dict) else None
            if text is not None:
                return text
        raise InferenceError("No text parts in response")

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = self._http.request(
                method, url, params={"key": self.api_key}, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise InferenceError(f"Network error: {e}") from e
        if not (200 <= resp.status_code < 300):
            logger.warning("Inference call failed", extra={"status": resp.status_code, "url": url})
        raise_for_status(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise InferenceError("Malformed JSON response from inference service") from e
