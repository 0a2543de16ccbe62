import pytest
from pydantic import ValidationError

from dkim_relay.models import (
    MAX_RECIPIENTS,
    CredentialCreate,
    DomainCreate,
    DomainUpdate,
    RotatePayload,
    SendRequest,
)


def test_send_request_accepts_aliases_and_builds_payload():
    request = SendRequest.model_validate(
        {
            "from": "sender@example.com",
            "to": ["a@example.org", "b@example.org"],
            "subject": "Hello",
            "text": "Body",
            "replyTo": "replies@example.com",
        }
    )
    assert request.to_payload() == {
        "from": "sender@example.com",
        "to": ["a@example.org", "b@example.org"],
        "subject": "Hello",
        "html": None,
        "text": "Body",
        "reply_to": "replies@example.com",
    }


@pytest.mark.parametrize("subject", ["Hi\r\nBcc: x@example.org", "line one\nline two", "trailing\r"])
def test_send_request_rejects_line_breaks_in_subject(subject):
    with pytest.raises(ValidationError):
        SendRequest.model_validate(
            {"from": "sender@example.com", "to": "dest@example.org", "subject": subject, "text": "Body"}
        )


def test_send_request_single_recipient_string():
    request = SendRequest.model_validate(
        {"from": "sender@example.com", "to": "dest@example.org", "subject": "Hi", "html": "<p>x</p>"}
    )
    assert request.to == "dest@example.org"


@pytest.mark.parametrize(
    "overrides",
    [
        {"from": "not-an-email"},
        {"to": "nobody"},
        {"to": []},
        {"to": [f"user{i}@example.org" for i in range(MAX_RECIPIENTS + 1)]},
        {"subject": ""},
        {"subject": "x" * 999},
        {"text": None},
        {"replyTo": "broken"},
    ],
)
def test_send_request_rejects_invalid_payloads(overrides):
    payload = {"from": "sender@example.com", "to": "dest@example.org", "subject": "Hi", "text": "Body"}
    payload.update(overrides)
    with pytest.raises(ValidationError):
        SendRequest.model_validate(payload)


def test_domain_create_normalises_name():
    assert DomainCreate(name=" Example.COM ").name == "example.com"
    with pytest.raises(ValidationError):
        DomainCreate(name="not a domain")


def test_admin_payload_aliases():
    assert DomainUpdate.model_validate({"isActive": False}).is_active is False
    assert DomainUpdate.model_validate({"isVerified": True}).model_dump() == {"is_active": None, "is_verified": True}
    assert CredentialCreate(name="prod").expires_in == "never"
    assert CredentialCreate.model_validate({"name": "prod", "expiresIn": "90d"}).expires_in == "90d"
    assert RotatePayload().expires_in is None
    with pytest.raises(ValidationError):
        CredentialCreate.model_validate({"name": "prod", "expiresIn": "7d"})
