import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from repo_reconciler.domain.exceptions import (
    MalformedDescriptor,
    PropagationTimeout,
    ReconcilerException,
    RemoteUnavailable,
)
from repo_reconciler.domain.models import (
    RECONCILED_FIELDS,
    ApplyReport,
    CanonicalMetadata,
    DiffResult,
    FieldDiff,
    FieldOutcome,
    FieldStatus,
    ReconcileResult,
    RemoteMetadata,
    VerifyReport,
)
from repo_reconciler.domain.ports import MetadataPlatform
from repo_reconciler.infrastructure.descriptor import DEFAULT_DESCRIPTOR, derive_identifier, load_canonical
from repo_reconciler.infrastructure.tokens import redact

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 3
DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_TIMEOUT = 120.0
# First verify poll happens after this delay, then the delay doubles until the grace period runs out
VERIFY_INITIAL_DELAY = 0.5
# Floor on how long a single verify read may take, so the last poll at the deadline still gets a chance
VERIFY_MIN_FETCH_TIMEOUT = 5.0


class ReconcilerService:
    """
    Service responsible for reconciling local canonical metadata with a remote hosting platform.

    The pipeline is load -> fetch -> diff -> apply -> verify. Field updates are
    independent: they run concurrently up to `max_workers`, and one failing
    field never stops the others. Topics are additive-only.
    """

    def __init__(
            self,
            platform: MetadataPlatform,
            max_workers: int = DEFAULT_MAX_WORKERS,
            grace_period: float = DEFAULT_GRACE_PERIOD,
            timeout: float = DEFAULT_TIMEOUT,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
            clock: Callable[[], float] = time.monotonic,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.platform = platform
        self.max_workers = max_workers
        self.grace_period = grace_period
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def load_canonical(path: Union[str, Path] = DEFAULT_DESCRIPTOR) -> CanonicalMetadata:
        return load_canonical(path)

    async def fetch_remote(self, identifier: str) -> RemoteMetadata:
        logger.info(f"Fetching remote metadata for {identifier}.")
        return await self.platform.fetch_metadata(identifier)

    @staticmethod
    def diff(canonical: CanonicalMetadata, remote: RemoteMetadata) -> DiffResult:
        """
        Compares canonical and remote metadata field by field.

        Scalars differ on any inequality; fields the descriptor leaves out are
        not managed. For topics only canonical topics missing remotely count,
        extra remote topics are left alone.
        """
        entries: Dict[str, FieldDiff] = {}

        for field in RECONCILED_FIELDS:
            canonical_value = getattr(canonical, field)
            remote_value = getattr(remote, field)

            if field == "topics":
                missing = canonical_value - remote_value
                if missing:
                    entries[field] = FieldDiff(
                        field=field, canonical=canonical_value, remote=remote_value, missing=missing
                    )
            elif canonical_value is not None and canonical_value != remote_value:
                entries[field] = FieldDiff(field=field, canonical=canonical_value, remote=remote_value)

        return DiffResult(entries=entries)

    async def _apply_field(self, semaphore: asyncio.Semaphore, identifier: str, entry: FieldDiff) -> FieldOutcome:
        async with semaphore:
            try:
                await self.platform.update_field(identifier, entry.field, entry.target)
            except ReconcilerException as e:
                reason = redact(f"{type(e).__name__}: {e}")
                logger.error(f"Failed to apply {entry.field} on {identifier}: {reason}")
                return FieldOutcome(field=entry.field, status=FieldStatus.FAILED, reason=reason)

        logger.info(f"Applied {entry.field} on {identifier}.")
        return FieldOutcome(field=entry.field, status=FieldStatus.APPLIED)

    async def apply(self, diff: DiffResult, identifier: str) -> ApplyReport:
        """
        Pushes every differing field to the remote, concurrently and independently.

        Updates still running when the timeout expires are cancelled and recorded
        as failed with a RemoteUnavailable reason.
        """
        outcomes: Dict[str, FieldOutcome] = {
            field: FieldOutcome(field=field, status=FieldStatus.SKIPPED, reason="unchanged")
            for field in RECONCILED_FIELDS
            if field not in diff
        }
        if not diff:
            return ApplyReport(outcomes=outcomes)

        semaphore = asyncio.Semaphore(self.max_workers)
        tasks = {
            asyncio.ensure_future(self._apply_field(semaphore, identifier, entry)): field
            for field, entry in diff.entries.items()
        }

        done, pending = await asyncio.wait(tasks, timeout=self.timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task, field in tasks.items():
            if task in done:
                outcomes[field] = task.result()
            else:
                reason = f"RemoteUnavailable: {RemoteUnavailable(f'update timed out after {self.timeout:g}s')}"
                logger.error(f"Failed to apply {field} on {identifier}: {reason}")
                outcomes[field] = FieldOutcome(field=field, status=FieldStatus.FAILED, reason=reason)

        return ApplyReport(outcomes=outcomes)

    async def verify(
            self,
            identifier: str,
            canonical: CanonicalMetadata,
            expected: Optional[Iterable[str]] = None,
    ) -> VerifyReport:
        """
        Re-fetches the remote and re-diffs it against canonical until the `expected`
        fields (default: all reconciled fields) have converged or the grace period runs out.

        The remote platform is eventually consistent, so divergence is polled on a
        doubling schedule rather than reported on the first look. Each read is cut
        off at the deadline (or VERIFY_MIN_FETCH_TIMEOUT, whichever is later).
        Read errors mark the watched fields as diverging; only RemoteUnavailable
        keeps the polling going.
        """
        watched = frozenset(expected) if expected is not None else frozenset(RECONCILED_FIELDS)
        deadline = self._clock() + self.grace_period
        delay = min(VERIFY_INITIAL_DELAY, self.grace_period)
        attempts = 0
        diverging: Optional[DiffResult] = None
        last_error: Optional[str] = None

        while True:
            if delay > 0:
                await self._sleep(delay)
            attempts += 1
            fetch_timeout = max(deadline - self._clock(), VERIFY_MIN_FETCH_TIMEOUT)
            transient = True
            try:
                remote = await asyncio.wait_for(self.platform.fetch_metadata(identifier), timeout=fetch_timeout)
                diverging = self.diff(canonical, remote)
                last_error = None
            except asyncio.TimeoutError:
                last_error = f"RemoteUnavailable: verify fetch exceeded {fetch_timeout:.1f}s"
                logger.warning(f"Verify fetch {attempts} for {identifier} failed: {last_error}")
            except ReconcilerException as e:
                # Reported per field: writes may already have happened.
                transient = isinstance(e, RemoteUnavailable)
                last_error = redact(f"{type(e).__name__}: {e}")
                logger.warning(f"Verify fetch {attempts} for {identifier} failed: {last_error}")

            remaining = deadline - self._clock()
            still_waiting = last_error is not None or (diverging is not None and watched & diverging.fields())
            if not still_waiting or not transient or remaining <= 0:
                break

            delay = min(delay * 2 or VERIFY_INITIAL_DELAY, remaining)
            logger.debug(f"{identifier} has not converged yet; polling again in {delay:.1f}s.")

        diverging_fields = set(diverging.fields()) if diverging is not None else set(watched)
        if last_error is not None:
            diverging_fields |= watched
        timed_out = bool(watched & diverging_fields)

        outcomes: Dict[str, FieldOutcome] = {}
        for field in sorted(watched | diverging_fields):
            if field not in diverging_fields:
                outcomes[field] = FieldOutcome(field=field, status=FieldStatus.CONVERGED)
            elif field in watched:
                reason = last_error or f"PropagationTimeout: {PropagationTimeout([field], self.grace_period)}"
                outcomes[field] = FieldOutcome(field=field, status=FieldStatus.DIVERGING, reason=reason)
            else:
                outcomes[field] = FieldOutcome(field=field, status=FieldStatus.DIVERGING, reason="not applied")

        if timed_out:
            logger.warning(str(PropagationTimeout(watched & diverging_fields, self.grace_period)))
        else:
            logger.info(f"Verified {identifier} after {attempts} attempt(s).")

        return VerifyReport(outcomes=outcomes, attempts=attempts, timed_out=timed_out)

    async def reconcile(
            self,
            descriptor_path: Union[str, Path] = DEFAULT_DESCRIPTOR,
            identifier: Optional[str] = None,
            dry_run: bool = False,
    ) -> ReconcileResult:
        """
        Runs the whole pipeline once.

        MalformedDescriptor is raised before any remote call. RemoteNotFound,
        RemoteUnauthorized and RemoteUnavailable from the initial fetch are fatal
        and propagate; per-field failures end up in the reports.
        """
        canonical = self.load_canonical(descriptor_path)
        if identifier is None:
            try:
                identifier = derive_identifier(canonical.repository_url)
            except ValueError as e:
                raise MalformedDescriptor(str(descriptor_path), str(e)) from e

        remote = await self.fetch_remote(identifier)
        diff = self.diff(canonical, remote)

        if not diff:
            logger.info(f"{identifier} is already in sync.")
        else:
            logger.info(f"{identifier} differs in: {', '.join(sorted(diff.fields()))}.")

        if dry_run:
            return ReconcileResult(identifier=identifier, dry_run=True, diff=diff)

        apply_report = await self.apply(diff, identifier)

        verify_report = None
        applied = apply_report.fields_with(FieldStatus.APPLIED)
        if applied:
            verify_report = await self.verify(identifier, canonical, expected=applied)

        return ReconcileResult(
            identifier=identifier,
            diff=diff,
            apply_report=apply_report,
            verify_report=verify_report,
        )
