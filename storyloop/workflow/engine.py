"""Story progression engine.

Advances a collection by one story per call:

1. SCAN the docs directory and analyze cross-references (advisory)
2. SELECT the first document with a pending story, LOCK it
3. REPAIR the locked document in place, committing fixes if any.
   Locked or unrepairable documents are skipped for the next candidate.
4. EXECUTE each phase of the lowest-priority-rank pending story
5. COMMIT the completion flag in a single atomic write, refresh the summary
6. RELEASE the lock

Retries are not attempted here. A failed phase leaves the story pending and
returns an ExecutorFailure for whatever retry policy sits above.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.lib.atomic import WriteFailure, commit_json, prune_backups
from storyloop.lib.config import StoreConfig
from storyloop.lib.constants import STATUS_COMPLETED
from storyloop.lib.deps import DependencyReport, analyze
from storyloop.lib.repair import repair_file
from storyloop.lib.types import Violation
from storyloop.pm.documents import scan_collection, set_story_passes, write_summary_markdown
from storyloop.pm.models import Document, Story
from storyloop.runner.executor import PhaseExecutor, PhaseOutcome, PhaseRequest
from storyloop.runner.locking import acquire, default_owner_token, get_lock_info, release
from storyloop.workflow.fsm import StoryFSM

logger = logging.getLogger(__name__)

# ProgressResult.status values
STATUS_RUN_COMPLETED = "completed"
STATUS_RUN_FAILED = "failed"
STATUS_RUN_LOCKED = "locked"
STATUS_RUN_IDLE = "idle"
STATUS_RUN_STRUCTURAL = "structural_error"
STATUS_RUN_WRITE_FAILED = "write_failed"


@dataclass
class ExecutorFailure:
    """A phase reported failure. The story stays pending."""
    document_path: Path
    story_id: str
    phase: int
    message: str
    output: Optional[dict] = None


@dataclass
class ProgressResult:
    """Outcome of one run_next() call."""
    status: str
    document_path: Path | None = None
    story_id: str | None = None
    failure: ExecutorFailure | None = None
    errors: list[Violation] = field(default_factory=list)  # Unrepairable violations
    locked: list[Path] = field(default_factory=list)  # Documents skipped for contention
    rejected: dict[Path, list[Violation]] = field(default_factory=dict)  # Documents skipped as unrepairable
    dependencies: DependencyReport = field(default_factory=DependencyReport)
    message: str = ""


@dataclass
class Selection:
    document: Document
    story: Story


def next_story_in(document: Document) -> Optional[Story]:
    """Lowest priority rank among pending stories; ties keep declaration order."""
    pending = document.pending_stories
    if not pending:
        return None
    return min(pending, key=lambda s: s.priority)


def select_next_story(documents: list[Document]) -> Optional[Selection]:
    """Pick the next story across a collection already in selection order."""
    for document in documents:
        story = next_story_in(document)
        if story is not None:
            return Selection(document=document, story=story)
    return None


class ProgressionEngine:
    """Advances stories one at a time through an external executor."""

    def __init__(
        self,
        config: StoreConfig,
        executor: PhaseExecutor,
        owner: str | None = None,
    ):
        self.config = config
        self.executor = executor
        self.owner = owner or default_owner_token()

    def scan(self) -> tuple[list[Document], DependencyReport]:
        """Scan the collection and check cross-references."""
        documents = scan_collection(self.config.docs_dir, self.config.doc_glob).documents
        return documents, analyze(documents)

    def peek_next(self) -> Optional[Selection]:
        """The story run_next() would try first, without locking anything."""
        documents, _ = self.scan()
        return select_next_story(documents)

    def run_next(self) -> ProgressResult:
        """Progress the next eligible story by one full run of its phases."""
        documents, deps = self.scan()
        candidates = [d for d in documents if d.pending_stories]
        if not candidates:
            logger.info("[ENGINE] No pending stories")
            return ProgressResult(status=STATUS_RUN_IDLE, dependencies=deps)

        contended = []
        rejected: dict[Path, list[Violation]] = {}
        first_rejection = None
        for document in candidates:
            if not acquire(document.path, self.owner, self.config.stale_after):
                holder = get_lock_info(document.path)
                logger.info(f"[ENGINE] {document.path.name} is locked by {holder.owner if holder else '?'}, skipping")
                contended.append(document.path)
                continue

            try:
                result = self._run_locked(document.path)
            finally:
                release(document.path, self.owner)

            if result is None:
                # Nothing pending after re-reading under the lock
                continue
            if result.status == STATUS_RUN_STRUCTURAL:
                rejected[document.path] = result.errors
                if first_rejection is None:
                    first_rejection = result
                continue
            result.locked = contended
            result.rejected = rejected
            result.dependencies = deps
            return result

        if first_rejection is not None:
            first_rejection.locked = contended
            first_rejection.rejected = rejected
            first_rejection.dependencies = deps
            return first_rejection
        if contended:
            return ProgressResult(
                status=STATUS_RUN_LOCKED,
                locked=contended,
                dependencies=deps,
                message=f"{len(contended)} document(s) with pending stories are locked",
            )
        return ProgressResult(status=STATUS_RUN_IDLE, dependencies=deps)

    def _run_locked(self, path: Path) -> ProgressResult | None:
        """Everything that happens while the document lock is held."""
        try:
            repaired = repair_file(path, owner=self.owner, verification_gate=self.config.verification_gate)
        except WriteFailure as e:
            return ProgressResult(status=STATUS_RUN_WRITE_FAILED, document_path=path, message=str(e))
        if not repaired.success:
            logger.error(f"[ENGINE] {path.name} has unrepairable errors; not progressing it")
            return ProgressResult(
                status=STATUS_RUN_STRUCTURAL,
                document_path=path,
                errors=repaired.errors,
                message="; ".join(str(e) for e in repaired.errors),
            )
        if repaired.backup_path:
            self._prune(path)

        document = Document.from_dict(path, repaired.document)
        story = next_story_in(document)
        if story is None:
            return None

        fsm = StoryFSM(story)
        fsm.start()
        for phase in story.phases:
            request = PhaseRequest(document_path=path, feature=document.feature, story=story, phase=phase)
            outcome = self._run_phase(request)
            if not outcome.success:
                fsm.fail()
                failure = ExecutorFailure(
                    document_path=path,
                    story_id=story.id,
                    phase=phase,
                    message=outcome.message,
                    output=outcome.output,
                )
                logger.warning(f"[ENGINE] {story.id} phase {phase} failed: {outcome.message}")
                return ProgressResult(
                    status=STATUS_RUN_FAILED,
                    document_path=path,
                    story_id=story.id,
                    failure=failure,
                    message=outcome.message,
                )

        updated = set_story_passes(document.data, story.id, True, status=STATUS_COMPLETED)
        committed = commit_json(path, updated, owner=self.owner)
        if not committed.success:
            fsm.fail()
            return ProgressResult(
                status=STATUS_RUN_WRITE_FAILED,
                document_path=path,
                story_id=story.id,
                message=str(committed.error),
            )
        fsm.complete()
        self._prune(path)

        logger.info(f"[ENGINE] {document.feature}: {story.id} completed")

        message = ""
        try:
            write_summary_markdown(Document.from_dict(path, updated))
        except WriteFailure as e:
            # The completion is already durable; only the derived summary is stale
            logger.error(f"[ENGINE] summary not refreshed: {e}")
            message = str(e)
        return ProgressResult(status=STATUS_RUN_COMPLETED, document_path=path, story_id=story.id, message=message)

    def _run_phase(self, request: PhaseRequest) -> PhaseOutcome:
        try:
            return self.executor.run_phase(request)
        except Exception as e:
            # Executor crashed without reporting; treat as a failed phase
            logger.exception(f"[ENGINE] executor raised on {request.story.id} phase {request.phase}")
            return PhaseOutcome(success=False, message=f"executor raised {type(e).__name__}: {e}")

    def _prune(self, path: Path) -> None:
        removed = prune_backups(path, self.config.backup_keep)
        if removed:
            logger.debug(f"[ENGINE] pruned {len(removed)} old backup(s) of {path.name}")
