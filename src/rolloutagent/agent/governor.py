import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Set, Tuple

logger = logging.getLogger(__name__)


def canonical_args(arguments: Mapping[str, Any] | None) -> str:
    """Canonical string form of tool arguments, used as the duplicate-call key."""
    return json.dumps(dict(arguments or {}), sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class _SessionBudget:
    count: int = 0
    seen: Set[Tuple[str, str]] = field(default_factory=set)


class CallGovernor:
    """Per-session tool call budget with duplicate-call suppression.

    A call is allowed only while the session is under its ceiling and the exact
    (tool, arguments) pair has not been seen since the last reset. Rejected
    calls are never queued. State lives only in this process and is dropped by
    reset(); nothing expires on its own.
    """

    def __init__(self, max_calls: int, name: str = "tools", warn_after_sessions: int = 100) -> None:
        if max_calls < 0:
            raise ValueError("max_calls must be >= 0")
        self.max_calls = max_calls
        self.name = name
        self._warn_after_sessions = warn_after_sessions
        self._sessions: Dict[str, _SessionBudget] = {}
        self._lock = threading.Lock()

    def allow(self, session_id: str, tool_name: str, args_key: str) -> bool:
        """Record and permit the call, or return False if over budget or a duplicate."""
        with self._lock:
            budget = self._sessions.get(session_id)
            if budget is None:
                budget = self._sessions[session_id] = _SessionBudget()
                if len(self._sessions) > self._warn_after_sessions:
                    logger.warning(
                        "Call governor '%s' is tracking %d sessions; state is only cleared on reset",
                        self.name,
                        len(self._sessions),
                    )

            if budget.count >= self.max_calls:
                logger.warning(
                    "Tool call limit (%d) reached for session %s. Rejecting call to %s",
                    self.max_calls,
                    session_id,
                    tool_name,
                )
                return False

            call_key = (tool_name, args_key)
            if call_key in budget.seen:
                logger.warning(
                    "Duplicate tool call for session %s: %s with args %s",
                    session_id,
                    tool_name,
                    args_key,
                )
                return False

            budget.seen.add(call_key)
            budget.count += 1
            logger.info(
                "Tool call %d/%d for session %s: %s",
                budget.count,
                self.max_calls,
                session_id,
                tool_name,
            )
            return True

    def reset(self, session_id: str) -> None:
        """Forget the session's counter and call history (start of a new analysis)."""
        with self._lock:
            self._sessions.pop(session_id, None)
        logger.debug("Reset call governor '%s' for session %s", self.name, session_id)

    def call_count(self, session_id: str) -> int:
        with self._lock:
            budget = self._sessions.get(session_id)
            return budget.count if budget is not None else 0

    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)
