"""
Session Management Module
=========================

This module defines the Session, which wires the Stockmeta components
together for one run of the application:

- Settings (loaded by the config_manager utility)
- The local key-value store holding the API key, model cache, and rows
- The Gemini client and model resolver
- The credential store, result store, and batch orchestrator
- The key rotation state carried between batches

Front ends (the CLI) talk to the Session rather than building components
themselves.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional

from .credentials import CredentialStore
from .csv_export import write_csv
from .models import Row
from .processing import BatchOrchestrator, BatchRunState, BatchSummary, PacingPolicy
from .progress import ProgressSnapshot, ProgressTracker
from .results import ResultStore
from stockmeta.integrations.google_ai_client import GoogleAIClient
from stockmeta.integrations.model_resolver import ModelResolver
from stockmeta.utils.config_manager import Settings
from stockmeta.utils.storage import JsonFileStorage


class Session:
    """
    Main session class that owns the application components.

    Attributes:
        settings: Active user settings
        storage: Key-value store shared by the credential and result stores
        client: GoogleAIClient used for listing, generation, and key tests
        resolver: ModelResolver with its per-key cache
        credentials: CredentialStore for the API key string
        results: ResultStore holding every row
        progress: ProgressTracker of the current or last batch
        orchestrator: BatchOrchestrator driving generation
        run_state: Key rotation state, carried from one batch to the next
    """

    def __init__(self, settings: Optional[Settings] = None, storage=None, client=None):
        self.logger = logging.getLogger(__name__)
        self.logger.info("Initializing new session")

        self.settings = settings or Settings()
        self.storage = storage or JsonFileStorage(
            Path(self.settings.storage_path).expanduser(),
            capacity_bytes=self.settings.storage_capacity_bytes,
        )
        self.client = client or GoogleAIClient(timeout=self.settings.request_timeout)
        self.resolver = ModelResolver(self.client, self.storage)
        self.credentials = CredentialStore(self.storage, resolver=self.resolver, client=self.client)
        self.results = ResultStore(self.storage)
        self.progress = ProgressTracker()
        self.orchestrator = BatchOrchestrator(
            self.results,
            self.client,
            self.resolver,
            pacing=PacingPolicy(self.settings.success_delay, self.settings.failure_delay),
            progress=self.progress,
            reset_delay=self.settings.progress_reset_delay,
        )
        self.run_state = BatchRunState()

        self.logger.debug(
            f"Session initialized - Storage: {self.storage.path}, Rows: {len(self.results)}"
        )

    def rows_for_generation(self, retry_failed: bool = False, selected_only: bool = False) -> List[Row]:
        """
        Rows a generate request applies to.

        Without flags, selected pending rows are chosen when any are
        selected, otherwise every pending row. ``retry_failed`` resubmits
        failed rows instead; ``selected_only`` restricts to selected rows.
        """
        if retry_failed:
            rows = self.results.failed_rows()
            if selected_only:
                rows = [row for row in rows if row.selected]
            return rows
        if selected_only:
            return self.results.selected_pending_rows()
        return self.results.rows_to_generate()

    def generate(
        self,
        retry_failed: bool = False,
        selected_only: bool = False,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
    ) -> BatchSummary:
        """Run one batch over the queue on the calling thread."""
        rows = self.rows_for_generation(retry_failed, selected_only)
        self.logger.info(f"Generate requested for {len(rows)} rows (retry_failed={retry_failed})")
        return self.orchestrator.run(
            rows,
            self.credentials.load(),
            run_state=self.run_state,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )

    def start_generation(
        self,
        retry_failed: bool = False,
        selected_only: bool = False,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        on_complete: Optional[Callable[[BatchSummary], None]] = None,
    ):
        """Run one batch on the orchestrator's background thread; see ``abort_generation``."""
        rows = self.rows_for_generation(retry_failed, selected_only)
        self.logger.info(f"Background generate requested for {len(rows)} rows (retry_failed={retry_failed})")
        self.orchestrator.start(
            rows,
            self.credentials.load(),
            run_state=self.run_state,
            on_progress=on_progress,
            on_complete=on_complete,
        )

    def abort_generation(self):
        self.orchestrator.abort()

    def export_csv(self, path: Optional[Path] = None) -> Path:
        return write_csv(self.results.rows(), path)

    def close(self):
        self.logger.info("Closing session")
        self.orchestrator.shutdown()
        self.client.close()
