# zbory/services.py

import logging
from dataclasses import dataclass

from flask import Flask, current_app

from zbory import db
from zbory.audit.audit_logger import AuditLogger
from zbory.authentication.otp import OtpService
from zbory.authentication.sessions import SessionIssuer
from zbory.authentication.sms import SmsAdapter, get_sms_adapter
from zbory.database.store import Store
from zbory.security.input_validator import InputValidator
from zbory.sheets.downloads import DownloadService
from zbory.sheets.rendering import SheetRenderer
from zbory.signing.provider import DocumentSigningService, get_signing_service
from zbory.signing.scheduler import SyncScheduler
from zbory.signing.synchronizer import DocumentSynchronizer
from zbory.voting.service import VotingService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Store
    audit: AuditLogger
    validator: InputValidator
    sms: SmsAdapter
    signing: DocumentSigningService
    renderer: SheetRenderer
    sessions: SessionIssuer
    otp: OtpService
    synchronizer: DocumentSynchronizer
    voting: VotingService
    downloads: DownloadService
    scheduler: SyncScheduler
    batch_size: int = 50

    def run_sync_cycle(self):
        """One scheduler tick: sweep expired sheets, then push signing forward."""
        self.voting.close_expired_sheets()
        self.synchronizer.create_pending_documents(self.batch_size)
        self.synchronizer.sync_pending(self.batch_size)

    def shutdown(self):
        self.scheduler.stop()


def build_services(app: Flask) -> Services:
    config = app.config
    store = Store(db.session)
    audit = AuditLogger(log_dir=config['AUDIT_LOG_DIR'])
    validator = InputValidator()
    sms = config.get('SMS_ADAPTER') or get_sms_adapter(config)
    signing = config.get('SIGNING_SERVICE') or get_signing_service(config)
    renderer = SheetRenderer(font_path=config.get('PDF_FONT_PATH'), public_base_url=config['PUBLIC_BASE_URL'])
    sessions = SessionIssuer(store, config['SESSION_TTL_SECONDS'])
    otp = OtpService(store, sms, sessions, config['AUTH_SECRET'], audit, validator=validator)
    synchronizer = DocumentSynchronizer(store, signing, renderer, audit)
    voting = VotingService(store, synchronizer, audit, validator=validator)
    downloads = DownloadService(store, renderer, sessions)

    services = Services(
        store=store,
        audit=audit,
        validator=validator,
        sms=sms,
        signing=signing,
        renderer=renderer,
        sessions=sessions,
        otp=otp,
        synchronizer=synchronizer,
        voting=voting,
        downloads=downloads,
        scheduler=None,
        batch_size=config['SIGNING_SYNC_BATCH_SIZE'],
    )
    services.scheduler = SyncScheduler(services.run_sync_cycle, config['SIGNING_SYNC_INTERVAL_SECONDS'], app=app)
    logger.info("Services ready (sms=%s, signing=%s)", type(sms).__name__, type(signing).__name__)
    return services


def get_services() -> Services:
    return current_app.extensions['zbory']
