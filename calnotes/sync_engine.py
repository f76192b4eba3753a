from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from pathlib import PurePosixPath
from typing import Any, Callable, Iterable

from calnotes.config_manager import ConfigManager
from calnotes.document_index import (
    DocumentIndex,
    occurrence_fallback_key,
    recurrence_date_from_id,
)
from calnotes.document_store import DocumentStore, DocumentStoreError, FieldsMutator, MarkdownDocumentStore
from calnotes.feed_source import FeedSource
from calnotes.frontmatter import (
    check_mutation_safety,
    delete_key_insensitive,
    find_key_insensitive,
    normalize_identity_value,
    set_key_insensitive,
)
from calnotes.ical_normalizer import CalendarNormalizer
from calnotes.models import (
    AppConfig,
    Occurrence,
    ReconcileSummary,
    SourceConfig,
    StoredDocument,
    SyncResult,
    default_app_config,
    fetch_window,
    normalize_calendar_url,
    serialize_datetime,
)
from calnotes.note_builder import NoteBuilder
from calnotes.orphan_state import OrphanTracker
from calnotes.reconciler import apply_outcome, diff_document, expected_end, expected_start, record_outcome
from calnotes.retry import RetryPolicy
from calnotes.state_store import StateStore
from calnotes.timezones import get_zone

logger = logging.getLogger(__name__)

ORPHAN_REASON = "missing-from-source"
SUMMARY_PREFIX = "Calendar Sync: "

Notifier = Callable[[str], None]


def _log_notice(message: str) -> None:
    logger.info("Notice: %s", message)


def can_evaluate_orphan(
    document: StoredDocument,
    configured_urls: set[str],
    successful_urls: set[str],
    failed_urls: set[str],
) -> bool:
    """Whether a missing document can be blamed on its source this cycle.

    Documents without a source URL are only judged when every configured
    source was fetched. Documents from sources that are no longer configured
    are never judged.
    """
    if not document.source_url:
        if not configured_urls:
            return False
        return len(successful_urls) == len(configured_urls) and not failed_urls
    if document.source_url not in configured_urls:
        return False
    return document.source_url in successful_urls


@dataclass
class _Cycle:
    config: AppConfig
    store: DocumentStore
    index: DocumentIndex
    zone: tzinfo
    force: bool
    now: datetime
    window_start: datetime
    window_end: datetime
    summary: ReconcileSummary
    run_id: int | None = None
    matched_paths: set[str] = field(default_factory=set)

    @property
    def keys(self):
        return self.config.identity_keys

    @property
    def behavior(self):
        return self.config.behavior


class SyncEngine:
    """Reconciles remote calendar occurrences with the notes in a document store."""

    def __init__(
        self,
        config_manager: ConfigManager | None = None,
        state_store: StateStore | None = None,
        *,
        store: DocumentStore | None = None,
        feed_source: FeedSource | None = None,
        orphan_tracker: OrphanTracker | None = None,
        notifier: Notifier | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.store = store
        self.feed_source = feed_source or FeedSource()
        self._owns_feed_source = feed_source is None
        self._feed_zone_name: str | None = None
        self.orphan_tracker = orphan_tracker or OrphanTracker()
        self._owns_orphan_tracker = orphan_tracker is None
        self.notifier = notifier or _log_notice
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._run_lock = threading.Lock()
        self._malformed_warned: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def reset_state(self) -> None:
        self.orphan_tracker.reset()
        self.feed_source.clear_cache()
        self._malformed_warned.clear()

    def _load_config(self) -> AppConfig:
        if self.config_manager is None:
            return default_app_config()
        return self.config_manager.load()

    def _document_store(self, config: AppConfig) -> DocumentStore:
        if self.store is not None:
            return self.store
        return MarkdownDocumentStore(config.sync.vault_path)

    def _prepare_components(self, config: AppConfig) -> None:
        if self._owns_feed_source and self._feed_zone_name != config.sync.floating_timezone:
            self.feed_source.normalizer = CalendarNormalizer(get_zone(config.sync.floating_timezone))
            self.feed_source.clear_cache()
            self._feed_zone_name = config.sync.floating_timezone
        if self._owns_orphan_tracker:
            self.orphan_tracker.configure(
                config.behavior.orphan_grace_cycles,
                config.behavior.tombstone_ttl_hours * 3600,
            )

    def _notify(self, message: str) -> None:
        try:
            self.notifier(message)
        except Exception:
            logger.exception("Notifier failed for message %r", message)

    def _audit(self, cycle: _Cycle, path: str, event_id: str | None, action: str, **details: Any) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(
            run_id=cycle.run_id,
            path=path,
            event_id=event_id or "",
            action=action,
            details=details,
        )

    def reconcile(
        self,
        sources: Iterable[str],
        filter_terms: Iterable[str],
        source_configs: dict[str, SourceConfig],
        force: bool = False,
        *,
        config: AppConfig | None = None,
        run_id: int | None = None,
    ) -> ReconcileSummary:
        """Run one reconciliation cycle.

        Returns a summary with ``skipped=True`` without doing any work when a
        cycle is already running, when automatic creation is disabled, or when
        no source allows automatic creation.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already in progress; skipping this run")
            return ReconcileSummary(skipped=True)
        try:
            config = config or self._load_config()
            if not config.behavior.allow_auto_create:
                logger.info("Automatic note creation is disabled; skipping sync")
                return ReconcileSummary(skipped=True)
            if not any(source.auto_create for source in source_configs.values()):
                logger.info("No calendar source has automatic creation enabled; skipping sync")
                return ReconcileSummary(skipped=True)
            return self._reconcile(list(sources), filter_terms, source_configs, force, config, run_id)
        finally:
            self._run_lock.release()

    def _reconcile(
        self,
        sources: list[str],
        filter_terms: Iterable[str],
        source_configs: dict[str, SourceConfig],
        force: bool,
        config: AppConfig,
        run_id: int | None,
    ) -> ReconcileSummary:
        logger.info("Starting calendar sync for %s source(s)", len(sources))
        self._prepare_components(config)
        self.orphan_tracker.prune()

        now = self._clock()
        window_start, window_end = fetch_window(now, config.sync.window_past_days, config.sync.window_future_days)
        terms = [str(term).strip().lower() for term in filter_terms if str(term).strip()]
        occurrences, successful_urls, failed_urls = self._fetch_all(sources, window_start, window_end)
        configured_urls = {normalize_calendar_url(url) for url in sources} - {""}
        normalized_configs = {normalize_calendar_url(url): value for url, value in source_configs.items()}

        zone = get_zone(config.sync.timezone)
        store = self._document_store(config)
        logger.info("Building document index")
        index = DocumentIndex.build(
            store,
            config.identity_keys,
            archive_folder=config.behavior.archive_folder,
            ignore_paths=config.behavior.ignore_paths,
            zone=zone,
        )
        cycle = _Cycle(
            config=config,
            store=store,
            index=index,
            zone=zone,
            force=force,
            now=now,
            window_start=window_start,
            window_end=window_end,
            summary=ReconcileSummary(
                successful_urls=sorted(successful_urls),
                failed_urls=sorted(failed_urls),
            ),
            run_id=run_id,
        )

        seen_ids: set[str] = set()
        seen_keys: set[str] = set()
        for occurrence in occurrences:
            key = occurrence_fallback_key(occurrence)
            if occurrence.id in seen_ids or key in seen_keys:
                continue
            seen_ids.add(occurrence.id)
            seen_keys.add(key)
            try:
                action, path = self._process_occurrence(
                    cycle,
                    occurrence,
                    key,
                    normalized_configs.get(occurrence.source_url),
                    terms,
                )
            except Exception:
                logger.exception("Error processing event %r (%s)", occurrence.title, occurrence.id)
                continue
            if action == "created":
                cycle.summary.created += 1
            elif action == "updated":
                cycle.summary.updated += 1
            elif action == "deleted":
                cycle.summary.deleted += 1
            if path:
                cycle.matched_paths.add(path)

        self._sweep_orphans(cycle, configured_urls, successful_urls, failed_urls, remote_empty=not occurrences)

        summary = cycle.summary
        if summary.total_changes:
            self._notify(SUMMARY_PREFIX + summary.message())
        else:
            logger.info("No changes.")
        return summary

    def _fetch_all(
        self,
        sources: list[str],
        window_start: datetime,
        window_end: datetime,
    ) -> tuple[list[Occurrence], set[str], set[str]]:
        occurrences: list[Occurrence] = []
        successful: set[str] = set()
        failed: set[str] = set()
        for url in sources:
            normalized = normalize_calendar_url(url)
            if not normalized:
                failed.add(url)
                continue
            try:
                result = self.feed_source.fetch(
                    normalized,
                    window_start,
                    window_end,
                    include_cancelled=True,
                    force_refresh=True,
                )
            except Exception:
                failed.add(normalized)
                logger.exception("Failed to fetch %s", normalized)
                continue
            if result.ok:
                successful.add(normalized)
                occurrences.extend(result.occurrences)
            else:
                failed.add(normalized)
                logger.warning(
                    "Fetch failed for %s: %s",
                    normalized,
                    result.error or result.status_code or "unknown error",
                )
        return occurrences, successful, failed

    def _process_occurrence(
        self,
        cycle: _Cycle,
        occurrence: Occurrence,
        fallback_key: str,
        source: SourceConfig | None,
        terms: list[str],
    ) -> tuple[str, str | None]:
        source_url = normalize_calendar_url(occurrence.source_url) or None
        match = cycle.index.primary(occurrence.id)
        repair = False
        if match is None:
            candidate = cycle.index.fallback(fallback_key)
            if candidate is not None and not candidate.archived:
                logger.info(
                    "Repairing event id for %r: %s -> %s (matched by uid and start)",
                    occurrence.title,
                    candidate.event_id,
                    occurrence.id,
                )
                match = candidate
                repair = True

        if match is not None:
            path = match.path
            if match.archived:
                return "none", path
            if occurrence.cancelled:
                logger.info("Event cancelled: %r", occurrence.title)
                return self._handle_cancelled(cycle, match), path
            return self._update_existing(cycle, match, occurrence, source_url, repair), path

        if occurrence.cancelled:
            return "none", None
        title = (occurrence.title or "").lower()
        if any(term in title for term in terms):
            return "none", None
        if source is not None and not source.auto_create:
            return "none", None
        if not cycle.force and self.orphan_tracker.has_recent_deletion(occurrence.id):
            logger.warning("Skipping recreation shortly after orphan deletion: %s", occurrence.id)
            return "none", None

        path = self._create(cycle, occurrence, source)
        return "created", path

    def _update_existing(
        self,
        cycle: _Cycle,
        document: StoredDocument,
        occurrence: Occurrence,
        source_url: str | None,
        repair: bool,
    ) -> str:
        outcome = diff_document(
            document,
            occurrence,
            cycle.keys,
            zone=cycle.zone,
            use_end_duration=cycle.behavior.use_end_duration,
            source_url=source_url,
            repair=repair,
        )
        if not outcome.changed and not cycle.force:
            return "none"

        updated = self._mutate(cycle, document.path, "update-existing-event", lambda fields: apply_outcome(fields, outcome))
        if not updated:
            return "none"
        record_outcome(document, outcome)
        if outcome.repaired:
            cycle.index.rebind_event_id(document, occurrence.id)
        self.orphan_tracker.forget_deletion(occurrence.id)
        logger.info("Updated %s (%s)", document.path, ", ".join(outcome.field_names()))
        self._audit(
            cycle,
            document.path,
            occurrence.id,
            "updated",
            changes=[
                {"field": change.name, "before": change.before, "after": change.after}
                for change in outcome.changes
            ],
        )
        return "updated"

    def _create(self, cycle: _Cycle, occurrence: Occurrence, source: SourceConfig | None) -> str:
        logger.info("Creating note for %r", occurrence.title)
        builder = NoteBuilder(
            cycle.store,
            cycle.keys,
            zone=cycle.zone,
            use_end_duration=cycle.behavior.use_end_duration,
            retry_policy=self.retry_policy,
        )
        path = builder.create(occurrence, source, now=cycle.now)
        # Later occurrences in this cycle must see the new note.
        cycle.index.register(
            StoredDocument(
                path=path,
                event_id=occurrence.id,
                uid=occurrence.series_uid or occurrence.id,
                stored_start=expected_start(occurrence, cycle.zone),
                stored_end=expected_end(occurrence, cycle.zone, cycle.behavior.use_end_duration),
                stored_title=occurrence.title,
                stored_location=occurrence.location or "",
                start=occurrence.start,
                source_url=normalize_calendar_url(occurrence.source_url) or None,
            )
        )
        self._audit(cycle, path, occurrence.id, "created", title=occurrence.title)
        return path

    def _mutate(self, cycle: _Cycle, path: str, reason: str, mutate: FieldsMutator) -> bool:
        """Apply a metadata mutation behind the malformed-frontmatter gate."""
        try:
            text = cycle.store.read_text(path)
        except (DocumentStoreError, OSError) as exc:
            logger.warning("Skipping metadata mutation (%s) for %s: file read failed (%s)", reason, path, exc)
            return False
        safety = check_mutation_safety(text)
        if not safety.safe:
            if path not in self._malformed_warned:
                self._malformed_warned.add(path)
                self._notify(f'Skipped metadata update for "{PurePosixPath(path).stem}" ({safety.reason}).')
            logger.warning("Skipping metadata mutation (%s) for %s: %s", reason, path, safety.reason)
            self._audit(cycle, path, None, "skipped_malformed", reason=reason, detail=safety.reason)
            return False
        try:
            return cycle.store.write_fields_merge(path, mutate)
        except (DocumentStoreError, OSError) as exc:
            logger.warning("Metadata mutation (%s) failed for %s: %s", reason, path, exc)
            return False

    def _handle_cancelled(self, cycle: _Cycle, document: StoredDocument) -> str:
        behavior = cycle.behavior
        if not behavior.no_loss_mode:
            return "deleted" if self._delete_or_archive(cycle, document) else "none"
        if behavior.archive_folder:
            if self._archive(cycle, document):
                return "deleted"
        elif behavior.delete_policy == "delete":
            logger.warning("Loss-preventing mode kept cancelled event note instead of deleting: %s", document.path)
        return "updated" if self._mark_cancelled(cycle, document) else "none"

    def _mark_cancelled(self, cycle: _Cycle, document: StoredDocument) -> bool:
        keys = cycle.keys
        cancelled_status = cycle.behavior.cancelled_status_value
        if (
            document.status == cancelled_status
            and document.cancelled_at
            and not document.orphan_candidate_at
        ):
            return False
        cancelled_at = serialize_datetime(cycle.now)

        def mutate(fields: dict[str, Any]) -> bool:
            changed = False
            current = normalize_identity_value(find_key_insensitive(fields, keys.status))
            previous = normalize_identity_value(find_key_insensitive(fields, keys.previous_status))
            if current and current.lower() != cancelled_status.lower() and not previous:
                set_key_insensitive(fields, keys.previous_status, current)
                changed = True
            if current != cancelled_status:
                set_key_insensitive(fields, keys.status, cancelled_status)
                changed = True
            if not normalize_identity_value(find_key_insensitive(fields, keys.cancelled_at)):
                set_key_insensitive(fields, keys.cancelled_at, cancelled_at)
                changed = True
            for key in (keys.orphan_candidate_at, keys.orphan_miss_count, keys.orphan_reason):
                changed = delete_key_insensitive(fields, key) or changed
            return changed

        if not self._mutate(cycle, document.path, "mark-cancelled", mutate):
            return False
        document.status = cancelled_status
        document.cancelled_at = document.cancelled_at or cancelled_at
        document.orphan_candidate_at = None
        logger.info("Marked cancelled: %s", document.path)
        self._audit(cycle, document.path, document.event_id, "marked_cancelled", status=cancelled_status)
        return True

    def _archive(self, cycle: _Cycle, document: StoredDocument) -> bool:
        folder = cycle.behavior.archive_folder
        if not folder or document.archived:
            return False
        name = PurePosixPath(document.path)
        target = f"{folder}/{name.name}"
        counter = 1
        while cycle.store.exists(target):
            target = f"{folder}/{name.stem} ({counter}){name.suffix}"
            counter += 1
        new_path = cycle.store.move(document.path, target)
        logger.info("Archived %s -> %s", document.path, new_path)
        self._audit(cycle, new_path, document.event_id, "archived", previous_path=document.path)
        document.archived = True
        return True

    def _delete_or_archive(self, cycle: _Cycle, document: StoredDocument) -> bool:
        policy = cycle.behavior.delete_policy
        try:
            if policy == "delete":
                cycle.store.delete(document.path)
                logger.info("Deleted %s", document.path)
                self._audit(cycle, document.path, document.event_id, "deleted")
                return True
            if policy == "archive":
                return self._archive(cycle, document)
        except (DocumentStoreError, OSError) as exc:
            logger.error("Failed to delete/archive %s: %s", document.path, exc)
        return False

    def _sweep_orphans(
        self,
        cycle: _Cycle,
        configured_urls: set[str],
        successful_urls: set[str],
        failed_urls: set[str],
        *,
        remote_empty: bool,
    ) -> None:
        logger.info("Checking for orphaned notes")
        if remote_empty:
            logger.warning("Skipping orphan cleanup because the remote event set is empty")
        if failed_urls:
            logger.warning(
                "Fetch failures for %s calendar(s); orphan cleanup only evaluates notes from successful calendars",
                len(failed_urls),
            )
        current_orphans: set[str] = set()
        for document in list(cycle.index.documents):
            try:
                self._sweep_document(
                    cycle,
                    document,
                    configured_urls,
                    successful_urls,
                    failed_urls,
                    remote_empty,
                    current_orphans,
                )
            except Exception:
                logger.exception("Error during orphan check for %s", document.path)
        self.orphan_tracker.drop_stale(current_orphans | cycle.matched_paths)

    def _sweep_document(
        self,
        cycle: _Cycle,
        document: StoredDocument,
        configured_urls: set[str],
        successful_urls: set[str],
        failed_urls: set[str],
        remote_empty: bool,
        current_orphans: set[str],
    ) -> None:
        tracker = self.orphan_tracker
        if document.archived:
            return
        if document.path in cycle.matched_paths:
            tracker.clear(document.path)
            if cycle.behavior.no_loss_mode and document.orphan_candidate_at:
                if self._clear_orphan_candidate(cycle, document):
                    cycle.summary.restored += 1
            return
        if not document.event_id:
            return
        if remote_empty or not can_evaluate_orphan(document, configured_urls, successful_urls, failed_urls):
            tracker.clear(document.path)
            return

        document_date = document.start or recurrence_date_from_id(document.event_id, cycle.zone)
        if document_date is None or not cycle.window_start <= document_date <= cycle.window_end:
            return

        current_orphans.add(document.path)
        misses = tracker.record_miss(document.path)
        if not tracker.reached_grace(misses):
            logger.warning("Orphan candidate (miss %s/%s): %s", misses, tracker.grace_cycles, document.path)
            return

        logger.warning("Orphan confirmed (miss %s): %s", misses, document.path)
        if cycle.behavior.no_loss_mode:
            if self._mark_orphan_candidate(cycle, document, misses):
                cycle.summary.quarantined += 1
        elif self._delete_or_archive(cycle, document):
            cycle.summary.deleted += 1
            tracker.record_deletion(document.event_id)
        tracker.clear(document.path)

    def _mark_orphan_candidate(self, cycle: _Cycle, document: StoredDocument, misses: int) -> bool:
        keys = cycle.keys
        candidate_at = serialize_datetime(cycle.now)

        def mutate(fields: dict[str, Any]) -> bool:
            changed = False
            if not normalize_identity_value(find_key_insensitive(fields, keys.orphan_candidate_at)):
                set_key_insensitive(fields, keys.orphan_candidate_at, candidate_at)
                changed = True
            current_miss = find_key_insensitive(fields, keys.orphan_miss_count)
            try:
                current_miss = int(current_miss)
            except (TypeError, ValueError):
                current_miss = None
            if current_miss != misses:
                set_key_insensitive(fields, keys.orphan_miss_count, misses)
                changed = True
            if normalize_identity_value(find_key_insensitive(fields, keys.orphan_reason)) != ORPHAN_REASON:
                set_key_insensitive(fields, keys.orphan_reason, ORPHAN_REASON)
                changed = True
            return changed

        if not self._mutate(cycle, document.path, "mark-orphan-candidate", mutate):
            return False
        document.orphan_candidate_at = document.orphan_candidate_at or candidate_at
        logger.warning("Quarantined orphan candidate: %s", document.path)
        self._audit(cycle, document.path, document.event_id, "quarantined", misses=misses, reason=ORPHAN_REASON)
        return True

    def _clear_orphan_candidate(self, cycle: _Cycle, document: StoredDocument) -> bool:
        keys = cycle.keys

        def mutate(fields: dict[str, Any]) -> bool:
            changed = False
            for key in (keys.orphan_candidate_at, keys.orphan_miss_count, keys.orphan_reason):
                changed = delete_key_insensitive(fields, key) or changed
            return changed

        if not self._mutate(cycle, document.path, "clear-orphan-candidate", mutate):
            return False
        document.orphan_candidate_at = None
        logger.info("Restored orphan candidate: %s", document.path)
        self._audit(cycle, document.path, document.event_id, "restored")
        return True

    def orphan_candidates(self, config: AppConfig | None = None) -> list[dict[str, Any]]:
        """Notes currently carrying quarantine metadata, sorted by path."""
        config = config or self._load_config()
        keys = config.identity_keys
        store = self._document_store(config)
        candidates: list[dict[str, Any]] = []
        for path in store.list_documents():
            try:
                fields = store.read_fields(path)
            except (DocumentStoreError, OSError):
                continue
            if not fields:
                continue
            candidate_at = normalize_identity_value(find_key_insensitive(fields, keys.orphan_candidate_at))
            if not candidate_at:
                continue
            candidates.append(
                {
                    "path": path,
                    "event_id": normalize_identity_value(find_key_insensitive(fields, keys.event_id)),
                    "candidate_at": candidate_at,
                    "miss_count": find_key_insensitive(fields, keys.orphan_miss_count),
                    "reason": normalize_identity_value(find_key_insensitive(fields, keys.orphan_reason)),
                }
            )
        return candidates

    def run_once(self, trigger: str = "manual", force: bool = False) -> SyncResult:
        if self.config_manager is None or self.state_store is None:
            raise RuntimeError("run_once needs a config manager and a state store")
        started_at = datetime.now(timezone.utc)
        run_id: int | None = None
        summary = ReconcileSummary()

        try:
            config = self.config_manager.load()
            enabled = [source for source in config.sources if source.enabled]
            if not enabled:
                duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
                message = "No calendar sources configured. Sync skipped."
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                )
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                    trigger=trigger,
                )

            run_id = self.state_store.start_sync_run(trigger=trigger)
            summary = self.reconcile(
                [source.url for source in enabled],
                config.behavior.filter_terms,
                {source.url: source for source in enabled},
                force=force,
                config=config,
                run_id=run_id,
            )
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            if summary.skipped:
                status = "skipped"
                message = "Sync skipped (already running or automatic creation disabled)."
            else:
                status = "success"
                message = summary.message()
                if summary.failed_urls:
                    message += f"; {len(summary.failed_urls)} source(s) failed"
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                changes_applied=summary.total_changes,
                counts=summary.to_dict(),
            )
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                changes_applied=summary.total_changes,
                trigger=trigger,
            )
        except Exception as exc:
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync failed")
            if run_id is None:
                run_id = self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=summary.total_changes,
                )
            else:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=summary.total_changes,
                    counts=summary.to_dict(),
                )
            self.state_store.record_audit_event(
                run_id=run_id,
                path="system",
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=summary.total_changes,
                trigger=trigger,
            )
