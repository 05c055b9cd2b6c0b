"""Tests for handshake error classification."""

from autoresponder.errors import (
    AuthErrorKind,
    DeliveryError,
    RecipientUnknownError,
    classify_auth_error,
    classify_send_code_error,
    classify_startup_error,
    extract_error_text,
)


class TestSendCodeClassification:
    def test_flood_wait_mentions_waiting(self):
        result = classify_send_code_error(
            "AUTH_ERROR: FLOOD_WAIT_123: A wait of 123 seconds is required")
        assert result.kind == AuthErrorKind.FLOOD_LIMITED
        assert "wait" in result.message.lower()
        assert "123" in result.message

    def test_flood_without_seconds(self):
        result = classify_send_code_error("AUTH_ERROR: FLOOD: too many requests")
        assert result.message == "Too many attempts. Please wait before trying again."

    def test_invalid_phone(self):
        result = classify_send_code_error("AUTH_ERROR: PHONE_NUMBER_INVALID: bad number")
        assert result.kind == AuthErrorKind.INVALID_PHONE_NUMBER
        assert result.message == "Invalid phone number. Check the format."

    def test_invalid_api_credentials(self):
        assert classify_send_code_error(
            "AUTH_ERROR: API_ID_INVALID: x").kind == AuthErrorKind.INVALID_CREDENTIAL
        assert classify_send_code_error(
            "AUTH_ERROR: API_HASH_INVALID: x").kind == AuthErrorKind.INVALID_CREDENTIAL

    def test_unknown_error_keeps_detail(self):
        result = classify_send_code_error("AUTH_ERROR: ConnectionError: network unreachable")
        assert result.kind == AuthErrorKind.UNKNOWN
        assert result.message == "ConnectionError: network unreachable"


class TestAuthClassification:
    def test_wrong_password_needs_2fa(self):
        result = classify_auth_error("AUTH_ERROR: PASSWORD_HASH_INVALID: wrong password")
        assert result.kind == AuthErrorKind.INVALID_SECOND_FACTOR
        assert result.message == "Invalid 2FA password"
        assert result.needs_2fa is True

    def test_invalid_code(self):
        result = classify_auth_error(
            "AUTH_ERROR: PHONE_CODE_INVALID: The phone code entered was invalid")
        assert result.kind == AuthErrorKind.INVALID_CODE
        assert result.message == "Invalid code. Check and try again."
        assert result.needs_2fa is None

    def test_expired_code(self):
        result = classify_auth_error("AUTH_ERROR: PHONE_CODE_EXPIRED: expired")
        assert result.message == "Code expired. Request a new code."

    def test_flood_during_sign_in(self):
        result = classify_auth_error("AUTH_ERROR: FLOOD_WAIT_30: wait")
        assert result.kind == AuthErrorKind.FLOOD_LIMITED
        assert "30 seconds" in result.message


def test_startup_classification_covers_both_tables():
    assert classify_startup_error("API_ID_INVALID: x").kind == AuthErrorKind.INVALID_CREDENTIAL
    assert classify_startup_error("PHONE_CODE_INVALID: x").kind == AuthErrorKind.INVALID_CODE


def test_extract_error_text():
    assert extract_error_text("AUTH_ERROR:  SOMETHING: detail ") == "SOMETHING: detail"
    assert extract_error_text("no marker here") == ""


def test_delivery_errors():
    err = RecipientUnknownError(5, "Could not find the input entity")
    assert isinstance(err, DeliveryError)
    assert err.chat_id == 5
    assert str(err) == "Cannot send message to 5: Could not find the input entity"
