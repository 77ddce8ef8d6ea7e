"""
Worker message protocol.

    coordinator ──init{token, documentId}──────────────► worker
    coordinator ◄──────────────────────────initialized── worker
    coordinator ──process{documentId, extractedText?}──► worker
    coordinator ◄─────────────────status{progress} * ─── worker
    coordinator ◄──────────────── complete | error ───── worker

Carried over Celery: `init` and `process` are the task arguments, the
intermediate messages are custom task states (INITIALIZED / PROGRESS) with
the message as `meta`, and the terminal message is the task's return value.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

STATE_INITIALIZED = "INITIALIZED"
STATE_PROGRESS    = "PROGRESS"


class MessageType(str, Enum):
    INIT        = "init"
    INITIALIZED = "initialized"
    PROCESS     = "process"
    STATUS      = "status"
    COMPLETE    = "complete"
    ERROR       = "error"


class WorkerMessage(BaseModel):
    type: MessageType
    data: dict[str, Any] = Field(default_factory=dict)


def init_message(token: str, document_id: str) -> dict:
    return WorkerMessage(
        type=MessageType.INIT,
        data={"token": token, "documentId": document_id},
    ).model_dump(mode="json")


def process_message(document_id: str, extracted_text: str | None = None) -> dict:
    data: dict[str, Any] = {"documentId": document_id}
    if extracted_text is not None:
        data["extractedText"] = extracted_text
    return WorkerMessage(type=MessageType.PROCESS, data=data).model_dump(mode="json")


def initialized_message() -> dict:
    return WorkerMessage(type=MessageType.INITIALIZED).model_dump(mode="json")


def status_message(progress: float, stage: str = "") -> dict:
    return WorkerMessage(
        type=MessageType.STATUS,
        data={"progress": round(progress, 4), "stage": stage},
    ).model_dump(mode="json")


def complete_message(document_id: str, status: str, chunks_count: int, skipped: bool = False) -> dict:
    return WorkerMessage(
        type=MessageType.COMPLETE,
        data={
            "documentId":  document_id,
            "status":      status,
            "chunksCount": chunks_count,
            "skipped":     skipped,
        },
    ).model_dump(mode="json")


def error_message(error: str) -> dict:
    return WorkerMessage(type=MessageType.ERROR, data={"error": error}).model_dump(mode="json")
