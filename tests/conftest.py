import os
import tempfile

import pytest

# Settings are read once at import, so point the database somewhere disposable first
os.environ.setdefault("DATABASE_URL", os.path.join(tempfile.mkdtemp(prefix="storefront-tests-"), "storefront.db"))

from storefront.models.khqr_model import MerchantIdentity, VerificationOutcome
from storefront.services.khqr_encoder import KHQREncoder

FIXED_NOW = 1_760_000_000.0


class ScriptedVerifier:
    """Returns queued outcomes in order, then a default outcome forever"""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default or VerificationOutcome.pending()
        self.calls = []

    def verify(self, content_hash):
        self.calls.append(content_hash)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def merchant():
    return MerchantIdentity(
        account_id="rattanak_coffee@aclb",
        merchant_name="Rattanak Coffee",
        merchant_city="Phnom Penh",
        mobile_number="85512345678",
        store_label="Rattanak Coffee",
        terminal_label="Online_Store",
    )


@pytest.fixture
def encoder(merchant):
    return KHQREncoder(merchant, clock=lambda: FIXED_NOW)
