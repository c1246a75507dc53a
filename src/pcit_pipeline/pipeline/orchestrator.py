"""Session pipeline orchestration: stage sequencing, retries, and status lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from pcit_pipeline.config import Settings
from pcit_pipeline.errors import USER_FACING_FAILURE_MESSAGE, StageError
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline.behavior_coding import code_behaviors
from pcit_pipeline.pipeline.qualitative import QualitativeResults, run_qualitative_branch
from pcit_pipeline.pipeline.role_identification import identify_roles
from pcit_pipeline.pipeline.scoring import score_utterances
from pcit_pipeline.pipeline.transcription import run_transcription
from pcit_pipeline.retry import RetryPolicy, SleepFunc, stage_policy
from pcit_pipeline.schemas import AnalysisStatus, ScoreResult, Session, TranscriptSegment
from pcit_pipeline.store.base import SessionRepository, StatusTransitionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_TRANSCRIPTION = "transcription"
STAGE_ROLE_IDENTIFICATION = "role_identification"
STAGE_BEHAVIOR_CODING = "behavior_coding"
STAGE_SCORING = "scoring"

ERROR_CODE_STALE = "stale"
ERROR_CODE_CANCELLED = "cancelled"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RecordingInput:
    """What a run transcribes: raw audio, or segments that were already diarized."""

    audio: bytes | None = None
    filename: str = "recording.webm"
    segments: list[TranscriptSegment] | None = None


class PipelineOrchestrator:
    """Run the analysis pipeline for sessions and own their status transitions.

    Mandatory stages (transcription, role identification, behavior coding,
    scoring) run in order under the stage retry policy; the first one to give
    up fails the session. The qualitative branch never fails a session.
    At most one run per session is active in this process, and the
    repository's PENDING -> PROCESSING check-and-set guards across processes.
    """

    def __init__(
        self,
        *,
        repository: SessionRepository,
        gateway: ProviderGateway | None = None,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
        sleep: SleepFunc | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._settings = settings or Settings()
        self._policy = policy or stage_policy(
            max_attempts=self._settings.stage_max_attempts,
            delays=self._settings.stage_retry_delays,
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._active: dict[str, asyncio.Task] = {}
        self._claiming: set[str] = set()

    def is_active(self, session_id: str) -> bool:
        task = self._active.get(session_id)
        return session_id in self._claiming or (task is not None and not task.done())

    # Triggering

    async def trigger(
        self,
        session_id: str,
        recording: RecordingInput | None = None,
    ) -> bool:
        """Start a background run for a PENDING session.

        Returns False without doing anything when a run is already active or
        the session is no longer PENDING.
        """

        if self._gateway is None:
            raise RuntimeError("Running the pipeline requires a provider gateway.")
        if self.is_active(session_id):
            logger.info("Session %s already has an active run; trigger ignored.", session_id)
            return False

        self._claiming.add(session_id)
        try:
            claimed = await self._repository.claim_session(session_id)
            if not claimed:
                logger.info("Session %s is not pending; trigger ignored.", session_id)
                return False
            task = asyncio.create_task(
                self._run_claimed(session_id, recording or RecordingInput()),
                name=f"pcit-session-{session_id}",
            )
            self._active[session_id] = task
            task.add_done_callback(lambda _: self._active.pop(session_id, None))
        finally:
            self._claiming.discard(session_id)
        return True

    async def wait(self, session_id: str) -> Session:
        """Wait for the session's active run (if any) and return the stored session."""

        task = self._active.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self._repository.get_session(session_id)

    async def run(
        self,
        session_id: str,
        recording: RecordingInput | None = None,
    ) -> Session:
        """Trigger a run and wait for it to finish."""

        await self.trigger(session_id, recording)
        return await self.wait(session_id)

    async def shutdown(self) -> None:
        """Cancel in-flight runs; each cancelled session is marked FAILED."""

        tasks = [task for task in self._active.values() if not task.done()]
        if not tasks:
            return
        logger.warning("Shutting down with %d in-flight session run(s).", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Status

    async def get_status(self, session_id: str) -> Session:
        """Return the stored session, failing it first if it is stuck in PROCESSING."""

        session = await self._repository.get_session(session_id)
        if session.status == AnalysisStatus.PROCESSING:
            expired = await self._expire_if_stale(session)
            if expired is not None:
                return expired
        return session

    async def sweep_stale_sessions(self) -> list[str]:
        """Fail every PROCESSING session with no active run past the staleness timeout."""

        expired: list[str] = []
        for session in await self._repository.list_sessions(status=AnalysisStatus.PROCESSING):
            if await self._expire_if_stale(session) is not None:
                expired.append(session.session_id)
        if expired:
            logger.warning("Marked %d stale session(s) as failed: %s", len(expired), expired)
        return expired

    def _is_stale(self, session: Session, now: datetime) -> bool:
        started = session.processing_started_at or session.updated_at
        limit = timedelta(seconds=self._settings.processing_stale_after_seconds)
        return now - started > limit

    async def _expire_if_stale(self, session: Session) -> Session | None:
        if self.is_active(session.session_id) or not self._is_stale(session, self._clock()):
            return None
        try:
            return await self._mark_failed(session.session_id, ERROR_CODE_STALE)
        except StatusTransitionError:
            # Finished between the read and the update.
            return None

    # Running

    async def _mark_failed(self, session_id: str, error_code: str) -> Session:
        return await self._repository.update_session_status(
            session_id,
            AnalysisStatus.FAILED,
            error_message=USER_FACING_FAILURE_MESSAGE,
            error_code=error_code,
            failed_at=self._clock(),
        )

    async def _run_stage(
        self,
        session_id: str,
        stage: str,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        def _on_retry(attempt_number: int, delay: float, exc: BaseException) -> None:
            logger.warning(
                "Session %s stage %s attempt %d failed (%s: %s); retrying in %.1fs.",
                session_id,
                stage,
                attempt_number,
                type(exc).__name__,
                exc,
                delay,
            )

        async def _sleep(delay: float) -> None:
            session = await self._repository.get_session(session_id)
            await self._repository.update_session_fields(
                session_id,
                retry_count=session.retry_count + 1,
                last_retried_at=self._clock(),
            )
            await self._sleep(delay)

        try:
            return await self._policy.call(func, on_retry=_on_retry, sleep=_sleep)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise StageError(stage, exc) from exc

    async def _run_mandatory(self, session: Session, recording: RecordingInput) -> ScoreResult:
        session_id = session.session_id
        settings = self._settings
        model = settings.resolved_openai_model() or None

        await self._run_stage(
            session_id,
            STAGE_TRANSCRIPTION,
            lambda: run_transcription(
                session_id=session_id,
                repository=self._repository,
                gateway=self._gateway,
                audio=recording.audio,
                filename=recording.filename,
                segments=recording.segments,
                expected_duration=session.duration_seconds or None,
            ),
        )
        await self._run_stage(
            session_id,
            STAGE_ROLE_IDENTIFICATION,
            lambda: identify_roles(
                session_id=session_id,
                repository=self._repository,
                gateway=self._gateway,
                model=model,
                temperature=settings.role_temperature,
                confidence_threshold=settings.role_confidence_threshold,
            ),
        )
        await self._run_stage(
            session_id,
            STAGE_BEHAVIOR_CODING,
            lambda: code_behaviors(
                session_id=session_id,
                mode=session.mode,
                repository=self._repository,
                gateway=self._gateway,
                model=model,
                temperature=settings.coding_temperature,
                batch_size=settings.coding_batch_size,
                max_rounds=settings.coding_max_rounds,
            ),
        )

        try:
            utterances = await self._repository.get_utterances(session_id)
            return score_utterances(session.mode, utterances)
        except Exception as exc:
            raise StageError(STAGE_SCORING, exc) from exc

    async def _run_branch(self, session: Session, score: ScoreResult) -> QualitativeResults:
        try:
            return await run_qualitative_branch(
                session=session,
                utterances=await self._repository.get_utterances(session.session_id),
                score=score,
                repository=self._repository,
                gateway=self._gateway,
                settings=self._settings,
                now=self._clock(),
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session %s qualitative branch could not start.", session.session_id)
            return QualitativeResults()

    async def _run_claimed(self, session_id: str, recording: RecordingInput) -> None:
        logger.info("Session %s analysis started.", session_id)
        try:
            session = await self._repository.get_session(session_id)
            score = await self._run_mandatory(session, recording)
            logger.info(
                "Session %s scored %d (%s, passed=%s).",
                session_id,
                score.score,
                score.mode,
                score.passed,
            )
            results = await self._run_branch(session, score)
            await self._repository.update_session_status(
                session_id,
                AnalysisStatus.COMPLETED,
                tag_counts=score.tag_counts,
                score=score.score,
                passed=score.passed,
                **results.session_fields(),
            )
            logger.info("Session %s analysis completed.", session_id)
        except StageError as exc:
            logger.error(
                "Session %s failed at stage %s: %s",
                session_id,
                exc.stage,
                exc.cause,
                exc_info=(type(exc.cause), exc.cause, exc.cause.__traceback__),
            )
            await self._mark_failed(session_id, exc.stage)
        except asyncio.CancelledError:
            logger.warning("Session %s run cancelled.", session_id)
            await self._mark_failed(session_id, ERROR_CODE_CANCELLED)
            raise
        except StatusTransitionError:
            logger.exception("Session %s changed status during the run.", session_id)
        except Exception:
            logger.exception("Session %s failed unexpectedly.", session_id)
            await self._mark_failed(session_id, "internal")
