# zbory/authentication/sms.py

import logging
from abc import ABC, abstractmethod

import requests

from zbory.errors import PermanentExternalError, classify_error

logger = logging.getLogger(__name__)

TURBOSMS_SEND_URL = "https://api.turbosms.ua/message/send.json"
TURBOSMS_TIMEOUT_SECONDS = 10
# 0 = request accepted, 800-803 = message accepted for delivery
TURBOSMS_SUCCESS_CODES = {0, 800, 801, 802, 803}

SMS_TEMPLATE = "Код для входу: {code}"


class SmsAdapter(ABC):
    @abstractmethod
    def send_code(self, phone: str, code: str) -> None:
        """Deliver the code or raise a ZboryError."""


class MockSmsAdapter(SmsAdapter):
    """Development adapter: the code goes to the log instead of a handset."""

    def __init__(self):
        self.sent = []

    def send_code(self, phone: str, code: str) -> None:
        self.sent.append((phone, code))
        logger.info("[SMS:MOCK] %s -> %s", phone, code)


class TurboSmsAdapter(SmsAdapter):
    def __init__(self, api_key: str, sender: str, timeout: int = TURBOSMS_TIMEOUT_SECONDS,
                 session: requests.Session = None):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_code(self, phone: str, code: str) -> None:
        payload = {
            "recipients": [phone.lstrip('+')],
            "sms": {"sender": self.sender, "text": SMS_TEMPLATE.format(code=code)},
        }
        try:
            response = self.session.post(
                TURBOSMS_SEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise classify_error(e) from e

        response_code = body.get('response_code')
        if response_code not in TURBOSMS_SUCCESS_CODES:
            raise PermanentExternalError(
                f"TurboSMS rejected the message: {body.get('response_status')}",
                code="SMS_REJECTED",
                details={"responseCode": response_code},
            )


def get_sms_adapter(config) -> SmsAdapter:
    api_key = config.get('TURBOSMS_API_KEY')
    if api_key:
        return TurboSmsAdapter(api_key, config.get('TURBOSMS_SENDER') or 'Zbory')
    logger.warning("TURBOSMS_API_KEY is not set; SMS codes will only be logged")
    return MockSmsAdapter()
