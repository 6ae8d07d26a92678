"""Outbound alert for urgent blood requests."""
import logging
from typing import Any, Dict, Optional

import requests


class UrgentRequestNotifier:
    """POSTs urgent requests to a webhook. Does nothing when no URL is configured."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 6.0, logger: Optional[logging.Logger] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, request: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        payload = {
            "type": "urgent_request",
            "request_id": request.get("_id"),
            "blood_bank_id": request.get("blood_bank_id"),
            "blood_type": request.get("blood_type"),
            "units": request.get("units"),
            "hospital": request.get("hospital"),
            "message": f"Urgent request for {request.get('units')} unit(s) of {request.get('blood_type')}",
        }
        try:
            response = requests.post(
                self.webhook_url,
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            self.logger.warning("urgent request notification failed request_id=%s error=%s", payload["request_id"], exc)
            return False
        self.logger.info("urgent request notification sent request_id=%s", payload["request_id"])
        return True
