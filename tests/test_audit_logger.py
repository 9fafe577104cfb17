# tests/test_audit_logger.py
import base64
import json
import os

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from zbory.audit.audit_logger import AuditLogger


@pytest.fixture
def temp_log_dir(tmp_path):
    log_dir = tmp_path / "test_logs"
    log_dir.mkdir()
    return str(log_dir)


@pytest.fixture
def audit_logger(temp_log_dir):
    return AuditLogger(log_dir=temp_log_dir)


def _entries(audit_logger):
    with open(audit_logger.log_file, 'r', encoding='utf-8') as f:
        return [json.loads(line) for line in f]


def test_init_creates_log_directory(temp_log_dir):
    os.rmdir(temp_log_dir)
    AuditLogger(log_dir=temp_log_dir)
    assert os.path.exists(temp_log_dir)


def test_log_security_event_basic(audit_logger):
    audit_logger.log_security_event("otp_verified", {"phone": "+380501112233"}, user_id="user123")

    entry = _entries(audit_logger)[0]
    assert entry['event_type'] == "otp_verified"
    assert entry['data'] == {"phone": "+380501112233"}
    assert entry['user_id'] == "user123"
    assert 'timestamp' in entry
    assert 'hash' in entry
    assert 'signature' in entry
    assert entry['previous_hash'] is None


def test_hash_chaining(audit_logger):
    audit_logger.log_security_event("sheet_closed", {"sheet_id": "s1"})
    first_hash = audit_logger.previous_hash
    audit_logger.log_security_event("document_created", {"sheet_id": "s1"})

    first, second = _entries(audit_logger)
    assert first['hash'] == first_hash
    assert second['previous_hash'] == first_hash


def test_signature_covers_entry_body(audit_logger):
    audit_logger.log_security_event("votes_cast", {"sheet_id": "s1", "answers": 2})

    entry = _entries(audit_logger)[0]
    signature = entry.pop('signature')
    entry.pop('hash')
    entry_json = json.dumps(entry, sort_keys=True).encode()
    audit_logger.signing_key.public_key().verify(base64.b64decode(signature), entry_json)


def test_verify_log_integrity_valid(audit_logger):
    audit_logger.log_security_event("EVENT1", {"data": "first"})
    audit_logger.log_security_event("EVENT2", {"data": "second"})
    assert audit_logger.verify_log_integrity() is True


def test_verify_log_integrity_empty(audit_logger):
    assert audit_logger.verify_log_integrity() is True


def test_verify_log_integrity_appended_garbage(audit_logger):
    audit_logger.log_security_event("EVENT1", {"data": "first"})
    with open(audit_logger.log_file, 'a') as f:
        f.write('{"tampered": true}\n')
    assert audit_logger.verify_log_integrity() is False


def test_verify_log_integrity_edited_data(audit_logger):
    audit_logger.log_security_event("EVENT1", {"sheet_id": "s1"})
    audit_logger.log_security_event("EVENT2", {"sheet_id": "s2"})
    with open(audit_logger.log_file, 'r') as f:
        content = f.read()
    with open(audit_logger.log_file, 'w') as f:
        f.write(content.replace('"s1"', '"s9"'))
    assert audit_logger.verify_log_integrity() is False


def test_verify_with_foreign_key_fails(audit_logger):
    audit_logger.log_security_event("EVENT1", {"data": "first"})
    other = Ed25519PrivateKey.generate().public_key()
    assert audit_logger.verify_log_integrity(public_key=other) is False


def test_load_previous_hash(temp_log_dir):
    key = Ed25519PrivateKey.generate()
    logger1 = AuditLogger(log_dir=temp_log_dir, signing_key=key)
    logger1.log_security_event("EVENT1", {"data": "first"})

    logger2 = AuditLogger(log_dir=temp_log_dir, signing_key=key)
    assert logger2.previous_hash == logger1.previous_hash
    logger2.log_security_event("EVENT2", {"data": "second"})
    assert logger2.verify_log_integrity() is True


def test_write_failure_does_not_raise(audit_logger, monkeypatch):
    def mock_open(*args, **kwargs):
        raise PermissionError("Access denied")

    monkeypatch.setattr("builtins.open", mock_open)
    audit_logger.log_security_event("ERROR_TEST", {"data": "test"})
    assert audit_logger.previous_hash is None
