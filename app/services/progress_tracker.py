# app/services/progress_tracker.py
from typing import Dict, Optional, Any, Tuple
from datetime import datetime, timedelta, timezone
from enum import Enum
import asyncio
import logging

logger = logging.getLogger(__name__)


class GenerationState(str, Enum):
    IDLE = "idle"
    COST_CHECK = "cost_check"
    DEBITING = "debiting"
    TEXT_GENERATING = "text_generating"
    IMAGE_GENERATING = "image_generating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


# FAILED is reachable from every non-terminal state
ALLOWED_TRANSITIONS = {
    GenerationState.IDLE: {GenerationState.COST_CHECK},
    GenerationState.COST_CHECK: {GenerationState.DEBITING},
    GenerationState.DEBITING: {GenerationState.TEXT_GENERATING},
    GenerationState.TEXT_GENERATING: {GenerationState.IMAGE_GENERATING, GenerationState.PERSISTING},
    GenerationState.IMAGE_GENERATING: {GenerationState.PERSISTING},
    GenerationState.PERSISTING: {GenerationState.DONE},
    GenerationState.DONE: set(),
    GenerationState.FAILED: set(),
}

TERMINAL_STATES = {GenerationState.DONE, GenerationState.FAILED}

# How long finished requests are remembered for polling and retries
RETENTION = timedelta(hours=1)

TrackingKey = Tuple[str, str]


class ProgressTracker:
    """Per-request generation state, keyed by (user id, request id).

    Besides the state history it remembers two things retries rely on:
    the result of a finished request, and text that was generated (and
    paid for) but could not be saved.
    """

    def __init__(self):
        self._progress_data: Dict[TrackingKey, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def start_tracking(self, user_id: str, request_id: str) -> None:
        """Start tracking a request in the IDLE state"""
        async with self._lock:
            self._prune()
            now = datetime.now(timezone.utc)
            self._progress_data[(user_id, request_id)] = {
                "state": GenerationState.IDLE,
                "reason": None,
                "started_at": now,
                "current_stage_start": now,
                "history": [],
                "result": None,
                "parked_text": None,
                "affirmation_id": None,
            }
            logger.debug(f"Started tracking generation {request_id} for {user_id}")

    async def transition(self, user_id: str, request_id: str, state: GenerationState,
                         reason: Optional[str] = None) -> None:
        """Move a request to ``state``; illegal moves raise ValueError"""
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if data is None:
                logger.warning(f"Generation {request_id} not found in progress tracker")
                return

            current = data["state"]
            if state == GenerationState.FAILED:
                if current in TERMINAL_STATES:
                    raise ValueError(f"Generation {request_id} already finished as {current.value}")
            elif state not in ALLOWED_TRANSITIONS[current]:
                raise ValueError(f"Illegal transition {current.value} -> {state.value} for {request_id}")

            now = datetime.now(timezone.utc)
            data["history"].append({
                "state": current.value,
                "duration": (now - data["current_stage_start"]).total_seconds(),
            })
            data["state"] = state
            data["reason"] = reason
            data["current_stage_start"] = now
            if state in TERMINAL_STATES:
                data["completed_at"] = now

            logger.info(f"Generation {request_id}: {current.value} -> {state.value}" + (f" ({reason})" if reason else ""))

    async def complete_task(self, user_id: str, request_id: str, result: Any, affirmation_id: Optional[str] = None) -> None:
        """Mark a request DONE and keep its result for replays"""
        await self.transition(user_id, request_id, GenerationState.DONE)
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if data is not None:
                data["result"] = result
                data["affirmation_id"] = affirmation_id
                data["parked_text"] = None

    async def fail_task(self, user_id: str, request_id: str, reason: str) -> None:
        await self.transition(user_id, request_id, GenerationState.FAILED, reason=reason)

    async def park_text(self, user_id: str, request_id: str, text: str, context: Dict[str, Any]) -> None:
        """Keep paid-for text whose write failed, so a retry only writes"""
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if data is not None:
                data["parked_text"] = {"text": text, **context}

    async def resume_persisting(self, user_id: str, request_id: str) -> Optional[Dict[str, Any]]:
        """Reopen a request that failed while saving parked text.

        Returns the parked text and its context with the request back in
        PERSISTING, or None when there is nothing to resume.
        """
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if not data or not data["parked_text"] or data["state"] != GenerationState.FAILED:
                return None

            now = datetime.now(timezone.utc)
            data["history"].append({
                "state": GenerationState.FAILED.value,
                "duration": (now - data["current_stage_start"]).total_seconds(),
            })
            data["state"] = GenerationState.PERSISTING
            data["reason"] = None
            data["current_stage_start"] = now
            data.pop("completed_at", None)
            logger.info(f"Generation {request_id}: retrying write of parked text")
            return dict(data["parked_text"])

    async def get_result(self, user_id: str, request_id: str) -> Optional[Any]:
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if data and data["state"] == GenerationState.DONE:
                return data["result"]
            return None

    async def get_state(self, user_id: str, request_id: str) -> Optional[GenerationState]:
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            return data["state"] if data else None

    async def get_progress(self, user_id: str, request_id: str) -> Optional[Dict[str, Any]]:
        """Get current progress for a request"""
        async with self._lock:
            data = self._progress_data.get((user_id, request_id))
            if data:
                end = data.get("completed_at") or datetime.now(timezone.utc)
                return {
                    "request_id": request_id,
                    "state": data["state"].value,
                    "reason": data["reason"],
                    "affirmation_id": data["affirmation_id"],
                    "elapsed_time": (end - data["started_at"]).total_seconds(),
                    "history": list(data["history"]),
                }
            return None

    def _prune(self) -> None:
        cutoff = datetime.now(timezone.utc) - RETENTION
        expired = [
            key for key, data in self._progress_data.items()
            if data["state"] in TERMINAL_STATES
            and data.get("completed_at", data["started_at"]) < cutoff
            and not data["parked_text"]
        ]
        for key in expired:
            del self._progress_data[key]


# Global instance
progress_tracker = ProgressTracker()
