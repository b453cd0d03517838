import logging
from enum import Enum
from typing import Callable, Optional

from ..models import AnalysisResult, ScoringResult, SessionState
from .stages import AnalysisStage, DiagnosticStage, RemediationStage, ScoringStage

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    START = "start"
    DIAGNOSTIC = "diagnostic"
    ANALYSIS_LOOP = "analysis_loop"
    REMEDIATION = "remediation"
    DONE = "done"


class LoopState(str, Enum):
    ANALYZE = "analyze"
    SCORE = "score"
    EXIT = "exit"


ExitPredicate = Callable[[Optional[ScoringResult]], bool]
TransitionHook = Callable[[WorkflowState], None]


def accept_unless_retry_requested(score: Optional[ScoringResult]) -> bool:
    return score is not None and not score.needs_retry


class AnalysisLoop:
    """Analyze, score, and re-analyze until the scorer accepts or the cap is hit.

    The loop always ends with the most recent AnalysisResult. Scoring can
    only end refinement early or late; it never fails the workflow.
    """

    def __init__(
        self,
        analysis: AnalysisStage,
        scoring: ScoringStage,
        max_iterations: int = 3,
        should_exit: ExitPredicate = accept_unless_retry_requested,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._analysis = analysis
        self._scoring = scoring
        self.max_iterations = max_iterations
        self._should_exit = should_exit

    async def run(self, session: SessionState, report: str) -> AnalysisResult:
        state = LoopState.ANALYZE
        iteration = 0
        result: Optional[AnalysisResult] = None
        score: Optional[ScoringResult] = None

        while state is not LoopState.EXIT:
            if state is LoopState.ANALYZE:
                iteration += 1
                feedback = score.reason if score is not None and score.needs_retry else None
                result = await self._analysis.run(session, report, feedback=feedback)
                logger.info(
                    "Session %s: analysis iteration %d/%d promote=%s confidence=%d",
                    session.session_id,
                    iteration,
                    self.max_iterations,
                    result.promote,
                    result.confidence,
                )
                state = LoopState.SCORE

            elif state is LoopState.SCORE:
                try:
                    score = await self._scoring.run(session, result)
                except Exception as e:
                    logger.warning(
                        "Session %s: scoring failed (%s: %s); keeping analysis from iteration %d",
                        session.session_id,
                        type(e).__name__,
                        e,
                        iteration,
                    )
                    state = LoopState.EXIT
                    continue

                if self._should_exit(score):
                    logger.info("Session %s: analysis accepted with score %d", session.session_id, score.score)
                    state = LoopState.EXIT
                elif iteration >= self.max_iterations:
                    logger.info(
                        "Session %s: analysis loop reached %d iterations; using last result (score %d: %s)",
                        session.session_id,
                        self.max_iterations,
                        score.score,
                        score.reason,
                    )
                    state = LoopState.EXIT
                else:
                    logger.info("Session %s: scorer requested retry: %s", session.session_id, score.reason)
                    state = LoopState.ANALYZE

        return result


class KubernetesWorkflow:
    """Fixed pipeline: Diagnostic, then the Analysis Loop, then Remediation.

    Every stage receives the same session, so they share one conversation
    history and one governor scope.
    """

    def __init__(
        self,
        diagnostic: DiagnosticStage,
        analysis_loop: AnalysisLoop,
        remediation: RemediationStage,
    ) -> None:
        self._diagnostic = diagnostic
        self._analysis_loop = analysis_loop
        self._remediation = remediation

    async def execute(
        self,
        session: SessionState,
        request_text: str,
        on_transition: Optional[TransitionHook] = None,
    ) -> AnalysisResult:
        def enter(state: WorkflowState) -> None:
            logger.info("Session %s: workflow -> %s", session.session_id, state.value)
            if on_transition is not None:
                on_transition(state)

        enter(WorkflowState.START)
        enter(WorkflowState.DIAGNOSTIC)
        report = await self._diagnostic.run(session, request_text)

        enter(WorkflowState.ANALYSIS_LOOP)
        analysis = await self._analysis_loop.run(session, report)

        enter(WorkflowState.REMEDIATION)
        final = await self._remediation.run(session, analysis, request_text)

        enter(WorkflowState.DONE)
        return final
