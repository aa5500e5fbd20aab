"""Exceptions raised by provider adapters."""

from __future__ import annotations

import json

import httpx


class ProviderError(Exception):
    """
    A model call failed.

    Parameters
    ----------
    message:
        Human-readable description.
    status_code:
        HTTP status, or ``None`` for transport / configuration failures.
    error_code:
        Vendor error code when the body carried one, else a local tag such
        as ``"not_configured"`` or ``"transport_error"``.
    provider:
        Name of the adapter that raised.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.provider = provider

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.error_code:
            parts.append(f"code={self.error_code}")
        return f"{base} ({', '.join(parts)})" if parts else base

    @classmethod
    def from_response(
        cls, provider: str, response: httpx.Response, body: bytes | None = None
    ) -> ProviderError:
        """Build an error from a failed HTTP response, reading vendor error JSON."""
        raw = body if body is not None else response.content
        text = raw.decode("utf-8", errors="replace") if raw else ""
        message = text[:500] or f"HTTP {response.status_code}"
        error_code: str | None = None
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                message = str(err.get("message") or message)
                code = err.get("code") or err.get("type")
                error_code = str(code) if code is not None else None
            elif isinstance(err, str):
                message = err
        return cls(
            f"{provider} API error: {response.status_code} - {message}",
            status_code=response.status_code,
            error_code=error_code,
            provider=provider,
        )
