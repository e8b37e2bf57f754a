import logging
import time
from typing import Any, Dict, Optional

import requests

from ..exceptions import ConfigurationError, VerificationTransportError
from ..models.khqr_model import VerificationOutcome

logger = logging.getLogger(__name__)

BAKONG_SUCCESS_CODE = 0
# Bakong errorCode for "transaction could not be found"
BAKONG_NOT_FOUND_ERROR_CODE = 1
SYNTHESIZED_ID_PREFIX = "SYN-BKG-"
DEFAULT_TIMEOUT = 30

_NOT_SETTLED_MARKERS = ("not found", "could not be found", "not yet", "pending")


class BakongVerifier:
    """Looks up KHQR settlement status on the Bakong API by content hash"""

    def __init__(self, api_url: Optional[str], token: Optional[str], timeout: float = DEFAULT_TIMEOUT):
        self.api_url = api_url
        self.token = token
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.token)

    def verify(self, content_hash: str) -> VerificationOutcome:
        """
        Check whether the payment identified by ``content_hash`` has settled.

        Only a missing API configuration raises; every other failure is
        returned as an error outcome so callers can keep polling.
        """
        if not self.is_configured:
            error = (
                "Missing Bakong API configuration. Please set BAKONG_PROD_BASE_API_URL_MD5 "
                "and BAKONG_TOKEN in environment variables."
            )
            logger.error(error)
            raise ConfigurationError(error)

        logger.debug(f"Verifying payment md5={content_hash} token=configured ({len(self.token)} chars)")

        try:
            data = self._post(content_hash)
        except VerificationTransportError as e:
            logger.warning(f"Bakong verification failed for md5={content_hash}: {e}")
            return VerificationOutcome.error(str(e))

        return self._interpret(data)

    def _post(self, content_hash: str) -> Dict[str, Any]:
        try:
            response = requests.post(
                self.api_url,
                json={"md5": content_hash},
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.token}",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise VerificationTransportError("Request timed out. Please try again.") from e
        except requests.exceptions.RequestException as e:
            raise VerificationTransportError(f"Failed to reach Bakong API: {e}") from e

        logger.debug(f"Bakong API response status: {response.status_code}")

        if not response.ok:
            raise VerificationTransportError(
                f"Bakong API returned status {response.status_code}: {response.text[:100]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise VerificationTransportError("Bakong API returned an unparseable response") from e

        if not isinstance(data, dict):
            raise VerificationTransportError("Bakong API returned an unexpected response shape")
        return data

    def _interpret(self, data: Dict[str, Any]) -> VerificationOutcome:
        response_code = data.get("responseCode")
        message = data.get("responseMessage")
        record = data.get("data")

        if response_code == BAKONG_SUCCESS_CODE and isinstance(record, dict) and record:
            transaction_id = record.get("hash") or record.get("transactionId")
            if transaction_id:
                logger.info(f"Payment verified, transaction={transaction_id}")
                return VerificationOutcome.verified(str(transaction_id))

            synthesized = f"{SYNTHESIZED_ID_PREFIX}{int(time.time() * 1000)}"
            logger.warning(
                f"Bakong settlement record carried no transaction id; using synthesized id {synthesized}"
            )
            return VerificationOutcome.verified(synthesized, synthesized=True)

        logger.debug(f"Payment not verified - code={response_code} message={message}")

        if self._is_not_settled(data.get("errorCode"), message):
            return VerificationOutcome.pending(
                message or "Payment not yet received. Please complete the payment and try again."
            )
        return VerificationOutcome.error(message)

    @staticmethod
    def _is_not_settled(error_code: Any, message: Optional[str]) -> bool:
        if not message or error_code == BAKONG_NOT_FOUND_ERROR_CODE:
            return True
        lowered = message.lower()
        return any(marker in lowered for marker in _NOT_SETTLED_MARKERS)
