"""Known idempotent-failure messages of the external tools.

The runtime and kubectl report "nothing to do" conditions (stopping a stopped
container, deleting a missing context) as failures. Every such message kina
knows about lives in ``RULES`` and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kina.process import ExecResult


class Outcome(StrEnum):
    OK = "ok"
    ALREADY_GONE = "already-gone"
    ALREADY_EXISTS = "already-exists"
    STILL_RUNNING = "still-running"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Rule:
    command: str
    pattern: str
    outcome: Outcome


RULES: tuple[Rule, ...] = (
    Rule("stop", "is not running", Outcome.ALREADY_GONE),
    Rule("stop", "No such container", Outcome.ALREADY_GONE),
    Rule("stop", "cannot kill: container is not running", Outcome.ALREADY_GONE),
    Rule("stop", "not found", Outcome.ALREADY_GONE),
    Rule("delete", "No such container", Outcome.ALREADY_GONE),
    Rule("delete", "not found", Outcome.ALREADY_GONE),
    Rule("delete", "container is running", Outcome.STILL_RUNNING),
    Rule("run", "already exists", Outcome.ALREADY_EXISTS),
    Rule("network create", "already exists", Outcome.ALREADY_EXISTS),
    Rule("network delete", "not found", Outcome.ALREADY_GONE),
    Rule("network delete", "No such network", Outcome.ALREADY_GONE),
    Rule("config delete-context", "not in", Outcome.ALREADY_GONE),
    Rule("config delete-context", "not found", Outcome.ALREADY_GONE),
    Rule("config delete-context", "does not exist", Outcome.ALREADY_GONE),
    Rule("config delete-cluster", "not in", Outcome.ALREADY_GONE),
    Rule("config delete-cluster", "not found", Outcome.ALREADY_GONE),
    Rule("config delete-cluster", "does not exist", Outcome.ALREADY_GONE),
    Rule("config delete-user", "not in", Outcome.ALREADY_GONE),
    Rule("config delete-user", "not found", Outcome.ALREADY_GONE),
    Rule("config delete-user", "does not exist", Outcome.ALREADY_GONE),
    Rule("taint", "not found", Outcome.ALREADY_GONE),
)


def classify(command: str, result: ExecResult) -> Outcome:
    """Map a command result to an Outcome. Unknown failures are FAILED."""
    if result.success:
        return Outcome.OK
    for rule in RULES:
        if rule.command == command and rule.pattern in result.stderr:
            return rule.outcome
    return Outcome.FAILED


def is_done(command: str, result: ExecResult) -> bool:
    """True when the command succeeded or there was nothing left to do."""
    return classify(command, result) in (Outcome.OK, Outcome.ALREADY_GONE, Outcome.ALREADY_EXISTS)
