from datetime import datetime, timedelta, timezone

import jwt
import pytest

from ats_backend.auth import CredentialService, extract_bearer_token, hash_password
from ats_backend.errors import DuplicateEmail, InvalidCredentials, Unauthenticated, ValidationError
from ats_backend.store import PLAN_FREE


def test_register_starts_free_with_three_credits(credentials):
    account, token = credentials.register("  New.User@Example.com ", "secret1", name=" Jane ")
    assert account.email == "new.user@example.com"
    assert account.name == "Jane"
    assert account.plan == PLAN_FREE
    assert account.credits_remaining == 3
    assert token


def test_register_never_stores_plaintext(credentials, store):
    account, _ = credentials.register("hash@example.com", "secret1")
    stored = store.get_account(account.id)
    assert stored.password_hash != "secret1"
    assert stored.password_hash == hash_password("secret1", stored.password_salt)


def test_register_duplicate_email_creates_nothing(credentials, store):
    first, _ = credentials.register("dup@example.com", "secret1")
    with pytest.raises(DuplicateEmail):
        credentials.register("DUP@example.com", "another1")
    assert store.get_account_by_email("dup@example.com").id == first.id
    assert store.get_account(first.id + 1) is None


@pytest.mark.parametrize(
    "email,password",
    [
        ("not-an-email", "secret1"),
        ("missing@tld", "secret1"),
        ("ok@example.com", "12345"),
        ("", ""),
    ],
)
def test_register_rejects_invalid_input_before_persisting(credentials, store, email, password):
    with pytest.raises(ValidationError):
        credentials.register(email, password)
    assert store.get_account_by_email(email.strip().lower()) is None


def test_password_of_exactly_six_characters_is_accepted(credentials):
    account, _ = credentials.register("six@example.com", "abcdef")
    assert account.id


def test_login_failures_are_indistinguishable(credentials):
    credentials.register("a@x.com", "secret1")
    with pytest.raises(InvalidCredentials) as wrong_password:
        credentials.authenticate("a@x.com", "wrong")
    with pytest.raises(InvalidCredentials) as unknown_email:
        credentials.authenticate("nobody@x.com", "anything")
    assert wrong_password.value.message == unknown_email.value.message
    assert wrong_password.value.status_code == unknown_email.value.status_code == 401


def test_login_returns_account_and_token(credentials):
    registered, _ = credentials.register("login@example.com", "secret1")
    account, token = credentials.authenticate("LOGIN@example.com", "secret1")
    assert account.id == registered.id
    assert credentials.resolve(token).id == registered.id


def test_token_claims_and_seven_day_window(credentials):
    account, token = credentials.register("claims@example.com", "secret1")
    payload = jwt.decode(token, "test-secret", algorithms=["HS256"])
    assert payload["userId"] == account.id
    assert payload["email"] == "claims@example.com"
    assert payload["exp"] - payload["iat"] == 7 * 24 * 3600


def test_token_valid_at_six_days_rejected_at_eight(credentials):
    account, _ = credentials.register("expiry@example.com", "secret1")
    issued = datetime.now(timezone.utc)
    token = credentials.issue_token(account, now=issued)

    assert credentials.resolve(token, now=issued + timedelta(days=6)).id == account.id
    with pytest.raises(Unauthenticated):
        credentials.resolve(token, now=issued + timedelta(days=8))


def test_expired_token_is_rejected_against_the_clock(credentials):
    account, _ = credentials.register("old@example.com", "secret1")
    token = credentials.issue_token(account, now=datetime.now(timezone.utc) - timedelta(days=8))
    with pytest.raises(Unauthenticated):
        credentials.resolve(token)


@pytest.mark.parametrize("token", [None, "", "   ", "not.a.jwt", "abc"])
def test_resolve_rejects_missing_or_malformed_tokens(credentials, token):
    with pytest.raises(Unauthenticated):
        credentials.resolve(token)


def test_resolve_rejects_token_signed_with_other_key(credentials, store):
    account, _ = credentials.register("key@example.com", "secret1")
    forged = CredentialService(store, "some-other-secret").issue_token(account)
    with pytest.raises(Unauthenticated):
        credentials.resolve(forged)


def test_resolve_rejects_token_for_unknown_account(credentials):
    account, _ = credentials.register("ghost@example.com", "secret1")
    ghost = account.model_copy(update={"id": account.id + 100})
    with pytest.raises(Unauthenticated) as exc_info:
        credentials.resolve(credentials.issue_token(ghost))
    assert "not found" in exc_info.value.message


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc.def") == "abc.def"
    assert extract_bearer_token("bearer   xyz ") == "xyz"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token(None) is None
