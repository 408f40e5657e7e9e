import logging
import threading
from typing import Optional

import requests

TELEGRAM_API_BASE = "https://api.telegram.org"


def mask_identifier(value: Optional[str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    if len(value) <= 2:
        return value[0] + "*"
    return value[:2] + "*" * max(1, len(value) - 4) + value[-2:]


class TelegramNotifier:
    """
    Operational messages to a Telegram chat. Best effort only: without a token
    or chat id it does nothing, and send failures are logged, never raised.
    """

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        timeout: float = 10.0,
        background: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.background = background
        self.logger = logger or logging.getLogger("cryptocards.notifier")

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def _post(self, text: str):
        try:
            resp = requests.post(
                f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage",
                json={"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("telegram_notify_failed error=%s", exc)

    def notify(self, text: str):
        if not self.enabled:
            return
        if self.background:
            threading.Thread(target=self._post, args=(text,), daemon=True).start()
        else:
            self._post(text)
