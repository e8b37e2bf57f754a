import pytest
import requests
from unittest.mock import patch, MagicMock

from storefront.exceptions import ConfigurationError
from storefront.models.khqr_model import VerificationStatus
from storefront.services.bakong_verifier import BakongVerifier, SYNTHESIZED_ID_PREFIX

API_URL = "https://api-bakong.nbc.gov.kh/v1/check_transaction_by_md5"
MD5 = "5d41402abc4b2a76b9719d911017c592"

NOT_FOUND = {
    "responseCode": 1,
    "responseMessage": "Transaction could not be found. Please check and try again.",
    "errorCode": 1,
    "data": None,
}


def make_response(payload=None, status_code=200, text="", json_error=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def verifier():
    return BakongVerifier(API_URL, "test-token")


@pytest.fixture
def mock_post():
    with patch("storefront.services.bakong_verifier.requests.post") as mock:
        yield mock


def test_request_shape(verifier, mock_post):
    """POSTs the hash as JSON with a bearer token and a hard timeout"""
    mock_post.return_value = make_response(NOT_FOUND)

    verifier.verify(MD5)

    mock_post.assert_called_once()
    args, kwargs = mock_post.call_args
    assert args[0] == API_URL
    assert kwargs["json"] == {"md5": MD5}
    assert kwargs["headers"]["Authorization"] == "Bearer test-token"
    assert kwargs["timeout"] == 30


def test_not_found_is_pending(verifier, mock_post):
    mock_post.return_value = make_response(NOT_FOUND)

    outcome = verifier.verify(MD5)

    assert outcome.status is VerificationStatus.PENDING
    assert not outcome.is_verified


def test_settled_transaction_is_verified(verifier, mock_post):
    mock_post.return_value = make_response({
        "responseCode": 0,
        "responseMessage": "Getting transaction successfully.",
        "errorCode": None,
        "data": {"hash": "BKG-abc", "fromAccountId": "customer@aclb", "amount": 24.5},
    })

    outcome = verifier.verify(MD5)

    assert outcome.is_verified
    assert outcome.transaction_id == "BKG-abc"
    assert outcome.synthesized is False


def test_transaction_id_fallback_field(verifier, mock_post):
    mock_post.return_value = make_response({"responseCode": 0, "data": {"transactionId": "TX-77"}})

    outcome = verifier.verify(MD5)

    assert outcome.transaction_id == "TX-77"


def test_missing_transaction_id_is_synthesized_and_flagged(verifier, mock_post):
    mock_post.return_value = make_response({"responseCode": 0, "data": {"amount": 24.5}})

    outcome = verifier.verify(MD5)

    assert outcome.is_verified
    assert outcome.synthesized is True
    assert outcome.transaction_id.startswith(SYNTHESIZED_ID_PREFIX)


def test_failed_transaction_is_error(verifier, mock_post):
    mock_post.return_value = make_response({
        "responseCode": 1,
        "responseMessage": "Transaction failed.",
        "errorCode": 3,
        "data": None,
    })

    outcome = verifier.verify(MD5)

    assert outcome.is_error
    assert outcome.message == "Transaction failed."


def test_http_error_is_error_outcome(verifier, mock_post):
    mock_post.return_value = make_response(status_code=401, text="Unauthorized")

    outcome = verifier.verify(MD5)

    assert outcome.is_error
    assert "status 401" in outcome.message


def test_timeout_is_error_outcome(verifier, mock_post):
    mock_post.side_effect = requests.exceptions.Timeout("read timed out")

    outcome = verifier.verify(MD5)

    assert outcome.is_error
    assert "timed out" in outcome.message


def test_connection_failure_is_error_outcome(verifier, mock_post):
    mock_post.side_effect = requests.exceptions.ConnectionError("connection refused")

    outcome = verifier.verify(MD5)

    assert outcome.is_error


def test_unparseable_body_is_error_outcome(verifier, mock_post):
    mock_post.return_value = make_response(json_error=ValueError("Expecting value"))

    outcome = verifier.verify(MD5)

    assert outcome.is_error


@pytest.mark.parametrize("api_url,token", [("", "test-token"), (API_URL, ""), (None, None)])
def test_missing_configuration_raises(mock_post, api_url, token):
    with pytest.raises(ConfigurationError):
        BakongVerifier(api_url, token).verify(MD5)
    mock_post.assert_not_called()
