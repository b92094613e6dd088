from __future__ import annotations
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Sequence

import httpx

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com"


def normalize_msisdn(phone: str, country_code: str = "221") -> str:
    """Digits only, with the country code prefixed to local numbers."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("00"):
        digits = digits[2:]
    if country_code and not digits.startswith(country_code):
        digits = country_code + digits.lstrip("0")
    return digits


class Notifier(ABC):
    """
    Best-effort delivery of issued codes to the buyer. `notify` never
    raises: the paid record is the source of truth and a lost message
    must not undo it.
    """

    async def notify(self, destination: str, codes: Sequence[str],
                     token: str) -> None:
        try:
            await self.send(destination, list(codes), token)
        except Exception:
            logger.exception(
                "ticket notification to %s for payment %s failed",
                destination, token
            )

    @abstractmethod
    async def send(self, destination: str, codes: List[str],
                   token: str) -> None: ...


class NullNotifier(Notifier):
    async def send(self, destination: str, codes: List[str],
                   token: str) -> None:
        logger.warning(
            "messaging not configured; tickets %s for payment %s "
            "not sent to %s", ",".join(codes), token, destination
        )


class WhatsAppNotifier(Notifier):
    def __init__(
        self, http: httpx.AsyncClient, *, access_token: str,
        phone_number_id: str, template: str, lang: str = "fr",
        api_version: str = "v20.0", country_code: str = "221",
    ) -> None:
        self.http = http
        self.url = f"{GRAPH_URL}/{api_version}/{phone_number_id}/messages"
        self.headers = {"Authorization": f"Bearer {access_token}"}
        self.template = template
        self.lang = lang
        self.country_code = country_code

    def build_message(self, destination: str, codes: List[str],
                      token: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "to": normalize_msisdn(destination, self.country_code),
            "type": "template",
            "template": {
                "name": self.template,
                "language": {"code": self.lang},
                "components": [{
                    "type": "body",
                    "parameters": [
                        {"type": "text", "text": ", ".join(codes)},
                        {"type": "text", "text": token},
                    ],
                }],
            },
        }

    async def send(self, destination: str, codes: List[str],
                   token: str) -> None:
        r = await self.http.post(
            self.url,
            json=self.build_message(destination, codes, token),
            headers=self.headers,
        )
        r.raise_for_status()
        logger.info("sent %d ticket code(s) for payment %s",
                    len(codes), token)
