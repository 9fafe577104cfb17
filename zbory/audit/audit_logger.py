# zbory/audit/audit_logger.py

import base64
import hashlib
import json
import logging
import os
import threading
from datetime import datetime, timezone

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

logger = logging.getLogger(__name__)

# Append-only audit trail: each JSON line carries the previous entry's hash
# and an Ed25519 signature over the entry body.


class AuditLogger:
    def __init__(self, log_dir='logs', signing_key=None):
        self.log_dir = log_dir
        self.log_file = os.path.join(log_dir, 'audit.log')
        self.previous_hash = None
        self._lock = threading.Lock()

        os.makedirs(log_dir, exist_ok=True)

        self.signing_key = signing_key or Ed25519PrivateKey.generate()
        self._load_previous_hash()

    def _load_previous_hash(self):
        if not os.path.exists(self.log_file):
            return
        with open(self.log_file, 'r', encoding='utf-8') as f:
            lines = [line for line in f if line.strip()]
        if not lines:
            return
        try:
            self.previous_hash = json.loads(lines[-1]).get('hash')
        except ValueError:
            logger.warning("Audit log %s ends with a malformed entry; starting a new chain", self.log_file)
            self.previous_hash = None

    def log_security_event(self, event_type, data, user_id=None):
        """Never raises: a failed audit write is reported through logging."""
        try:
            with self._lock:
                log_entry = {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "event_type": event_type,
                    "data": data,
                    "user_id": user_id,
                    "previous_hash": self.previous_hash,
                }
                entry_json = json.dumps(log_entry, sort_keys=True, default=str)
                entry_hash = hashlib.sha256(entry_json.encode()).hexdigest()
                signature = self.signing_key.sign(entry_json.encode())

                log_entry['hash'] = entry_hash
                log_entry['signature'] = base64.b64encode(signature).decode()

                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(log_entry, default=str) + "\n")

                self.previous_hash = entry_hash
        except Exception:
            logger.exception("Audit log write failed for event %s", event_type)

    def verify_log_integrity(self, public_key=None):
        public_key = public_key or self.signing_key.public_key()
        if not os.path.exists(self.log_file):
            return True
        previous_hash = None
        with open(self.log_file, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    log_entry = json.loads(line)
                    signature = base64.b64decode(log_entry.pop('signature'))
                    entry_hash = log_entry.pop('hash')
                except (ValueError, KeyError):
                    return False
                if log_entry.get('previous_hash') != previous_hash:
                    return False
                entry_json = json.dumps(log_entry, sort_keys=True, default=str).encode()
                if hashlib.sha256(entry_json).hexdigest() != entry_hash:
                    return False
                try:
                    public_key.verify(signature, entry_json)
                except InvalidSignature:
                    return False
                previous_hash = entry_hash
        return True
