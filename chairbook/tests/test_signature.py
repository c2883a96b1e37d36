"""Tests for webhook signature verification."""
from __future__ import annotations

import pytest

from chairbook.app.billing.signature import (
    SignatureVerifier,
    build_manifest,
    compute_signature,
    parse_signature_header,
    verify_webhook_signature,
)

SECRET = "s3cr3t"
RESOURCE_ID = "123456789"
REQUEST_ID = "bb56a2f1-6aae-46ac-982e-9dcd3581d08e"
TS = "1704908010"


def _header(signature: str, ts: str = TS) -> str:
    return f"ts={ts},v1={signature}"


def _valid_signature() -> str:
    return compute_signature(build_manifest(RESOURCE_ID, REQUEST_ID, TS), SECRET)


def test_manifest_layout_is_exact():
    assert build_manifest("42", "req-1", "99") == "id:42;request-id:req-1;ts:99;"


def test_accepts_correct_signature():
    assert verify_webhook_signature(_header(_valid_signature()), REQUEST_ID, RESOURCE_ID, SECRET) is True


def test_header_parsing_tolerates_whitespace_and_order():
    header = f" v1={_valid_signature()} , ts={TS} "
    assert parse_signature_header(header) == {"v1": _valid_signature(), "ts": TS}
    assert verify_webhook_signature(header, REQUEST_ID, RESOURCE_ID, SECRET) is True


def test_rejects_every_single_character_mutation():
    signature = _valid_signature()
    for index, char in enumerate(signature):
        replacement = "0" if char != "0" else "1"
        mutated = signature[:index] + replacement + signature[index + 1 :]
        assert verify_webhook_signature(_header(mutated), REQUEST_ID, RESOURCE_ID, SECRET) is False


@pytest.mark.parametrize(
    "signature",
    [
        pytest.param("", id="empty"),
        pytest.param("abc", id="short"),
        pytest.param(None, id="appended"),
    ],
)
def test_rejects_length_mismatch_without_raising(signature):
    value = signature if signature is not None else _valid_signature() + "00"
    assert verify_webhook_signature(_header(value), REQUEST_ID, RESOURCE_ID, SECRET) is False


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "garbage",
        f"ts={TS}",
        "v1=deadbeef",
        "ts=,v1=",
        "=,=,=",
        "ts=1,v1=éé",
    ],
)
def test_malformed_headers_fail_closed(header):
    assert verify_webhook_signature(header, REQUEST_ID, RESOURCE_ID, SECRET) is False


@pytest.mark.parametrize(
    "request_id, resource_id, secret",
    [
        (None, RESOURCE_ID, SECRET),
        ("", RESOURCE_ID, SECRET),
        (REQUEST_ID, None, SECRET),
        (REQUEST_ID, "", SECRET),
        (REQUEST_ID, RESOURCE_ID, None),
        (REQUEST_ID, RESOURCE_ID, ""),
    ],
)
def test_missing_inputs_fail_closed(request_id, resource_id, secret):
    assert verify_webhook_signature(_header(_valid_signature()), request_id, resource_id, secret) is False


def test_signature_is_bound_to_request_resource_and_timestamp():
    header = _header(_valid_signature())
    assert verify_webhook_signature(header, "other-request", RESOURCE_ID, SECRET) is False
    assert verify_webhook_signature(header, REQUEST_ID, "987", SECRET) is False
    assert verify_webhook_signature(_header(_valid_signature(), ts="1704908011"), REQUEST_ID, RESOURCE_ID, SECRET) is False
    assert verify_webhook_signature(header, REQUEST_ID, RESOURCE_ID, "other-secret") is False


def test_verifier_without_secret_rejects_everything():
    verifier = SignatureVerifier(None)
    assert verifier.is_configured is False
    assert verifier.verify(_header(_valid_signature()), REQUEST_ID, RESOURCE_ID) is False


def test_configured_verifier_is_repeatable():
    verifier = SignatureVerifier(SECRET)
    header = _header(_valid_signature())
    assert all(verifier.verify(header, REQUEST_ID, RESOURCE_ID) for _ in range(3))
