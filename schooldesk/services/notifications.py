"""Deliver text messages (one-time codes) to school contacts over WhatsApp."""

import logging
import re
from typing import Any, Mapping, Protocol, TypedDict

import httpx

from schooldesk.config import (
    WHATSAPP_COUNTRY_CODE,
    WHATSAPP_GRAPH_API_URL,
    WHATSAPP_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class SendResult(TypedDict):
    success: bool
    error: str | None


class NotificationSender(Protocol):
    def send(self, destination: str, message: str, config: Any) -> SendResult: ...


def _ok() -> SendResult:
    return {"success": True, "error": None}


def _failed(error: str) -> SendResult:
    return {"success": False, "error": error}


def normalize_phone(to: str, country_code: str = WHATSAPP_COUNTRY_CODE) -> str:
    """
    Digits only, international form without '+'.

    "0300 1234567" -> "923001234567", "+92 300 1234567" -> "923001234567".
    """
    numeric = re.sub(r"\D", "", to or "")
    if numeric.startswith(country_code):
        return numeric
    if numeric.startswith("0"):
        return country_code + numeric[1:]
    return country_code + numeric


class WhatsAppSender:
    """
    Sends through the provider named in the delivery settings:
      - "ultramsg": UltraMSG instance API (form post to <api_url>/messages/chat)
      - "official": WhatsApp Cloud API (Graph API, bearer token)
    """

    def __init__(
        self,
        *,
        timeout: float = WHATSAPP_TIMEOUT_SECONDS,
        graph_api_url: str = WHATSAPP_GRAPH_API_URL,
        country_code: str = WHATSAPP_COUNTRY_CODE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.graph_api_url = graph_api_url.rstrip("/")
        self.country_code = country_code
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def send(self, destination: str, message: str, config: Mapping[str, Any]) -> SendResult:
        provider = (config.get("whatsapp_provider") or "none").strip().lower()
        if provider == "ultramsg":
            return self._send_ultramsg(destination, message, config)
        if provider == "official":
            return self._send_official(destination, message, config)
        return _failed("No Active WhatsApp Provider is Configured.")

    def _send_ultramsg(self, to: str, message: str, config: Mapping[str, Any]) -> SendResult:
        api_url = (config.get("whatsapp_api_url") or "").strip()
        token = (config.get("whatsapp_api_key") or "").strip()
        if not api_url or not token:
            logger.error("UltraMSG API URL or Token missing.")
            return _failed("UltraMSG API URL or Token missing.")

        # The instance id is part of the configured URL.
        url = f"{api_url.rstrip('/')}/messages/chat"
        form = {
            "token": token,
            "to": normalize_phone(to, self.country_code),
            "body": message,
            "priority": str(config.get("whatsapp_priority") or "10"),
        }
        try:
            with self._client() as client:
                response = client.post(url, data=form)
        except httpx.HTTPError as e:
            logger.exception("UltraMSG request failed for %s: %s", to, e)
            return _failed(str(e) or e.__class__.__name__)

        try:
            body = response.json()
        except ValueError:
            if not response.is_success:
                error = f"API responded with non-JSON text: {response.text}"
                logger.error("UltraMSG error: %s", error)
                return _failed(error)
            logger.info("UltraMSG message sent to %s (non-JSON reply)", to)
            return _ok()

        if not isinstance(body, dict):
            body = {}
        sent = str(body.get("sent", "")).lower() == "true" or bool(body.get("id"))
        if not response.is_success or not sent:
            error = body.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            logger.error("UltraMSG API error for %s: %s", to, body)
            return _failed(f"API Error: {error or 'Unknown API error'}")

        logger.info("UltraMSG message sent to %s", to)
        return _ok()

    def _send_official(self, to: str, message: str, config: Mapping[str, Any]) -> SendResult:
        phone_number_id = (config.get("whatsapp_phone_number_id") or "").strip()
        access_token = (config.get("whatsapp_access_token") or "").strip()
        if not phone_number_id or not access_token:
            logger.error("Official API Phone Number ID or Access Token missing.")
            return _failed("Official API Phone Number ID or Access Token missing.")

        url = f"{self.graph_api_url}/{phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": normalize_phone(to, self.country_code),
            "type": "text",
            "text": {"preview_url": False, "body": message},
        }
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            with self._client() as client:
                response = client.post(url, json=payload, headers=headers)
            body = response.json()
        except httpx.HTTPError as e:
            logger.exception("WhatsApp Cloud API request failed for %s: %s", to, e)
            return _failed(str(e) or e.__class__.__name__)
        except ValueError:
            body = {}

        error = body.get("error") if isinstance(body, dict) else None
        if not response.is_success or error:
            detail = error.get("message") if isinstance(error, dict) else error
            logger.error("WhatsApp Cloud API error for %s: %s", to, error or response.status_code)
            return _failed(f"API Error: {detail or 'Unknown API error'}")

        logger.info("WhatsApp Cloud API message sent to %s", to)
        return _ok()


class ConsoleSender:
    """Development channel: writes the message to the log instead of sending it."""

    def send(self, destination: str, message: str, config: Any = None) -> SendResult:
        logger.warning(
            "\n"
            "============================================================\n"
            "  ONE-TIME CODE (console delivery)\n"
            "  To: %s\n"
            "  %s\n"
            "============================================================",
            destination,
            message,
        )
        return _ok()
