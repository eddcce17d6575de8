"""
Shared API wiring: the assembled ledger system and error translation
"""

from typing import Optional
import logging

from fastapi import HTTPException, Request, status

from ..config import LedgerConfig, get_config
from ..errors import ConflictOrDuplicate, FieldRejected, InvalidInput, LedgerError, NotFound, StoreUnavailable
from ..events import ChangeFeed, SyncBridge
from ..ledger import LedgerEngine
from ..storage import StorageInterface, create_storage


logger = logging.getLogger("loan_ledger.api")


class LedgerSystem:
    """Ledger engine with its storage, change feed and sync bridge wired together"""

    def __init__(self, config: Optional[LedgerConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.storage_backend,
            self.config.database_path,
            self.config.max_field_bytes
        )
        self.feed = ChangeFeed()
        self.feed.attach(self.storage)
        self.engine = LedgerEngine(self.storage, self.config.account_id, config=self.config)
        self.bridge = SyncBridge(self.feed, self.engine)
        self.started = False

    def start(self) -> None:
        """
        Load the ledger, then start the sync bridge and the penalty sweep.

        A StoreUnavailable on load is logged and leaves the system blocked;
        every ledger endpoint answers 503 until a restart succeeds.
        """
        try:
            self.engine.start()
        except StoreUnavailable as e:
            logger.error(f"Ledger unavailable at startup: {e}")
            return
        self.bridge.start()
        if self.config.enable_penalty_sweep:
            self.engine.scheduler.start()
        self.started = True

    def stop(self) -> None:
        self.bridge.stop()
        self.engine.close()
        self.storage.close()
        self.started = False


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def http_error(error: LedgerError) -> HTTPException:
    """Map a ledger error onto an HTTP status"""
    if isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (InvalidInput, FieldRejected)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, ConflictOrDuplicate):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, StoreUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=error.message)
