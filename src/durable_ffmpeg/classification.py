"""Encoder failure classification table.

Maps an ffmpeg exit (return code + stderr text) to SUCCESS, RECOVERABLE or
FATAL. Rules are evaluated in order and the first match wins:

1. Exit 0 is success.
2. Environmental failures (killed by a signal, CPU/memory ceilings, full disk)
   are recoverable whatever the text says.
3. Input and argument errors are fatal: the same input fails the same way.
4. Transport and I/O errors are recoverable.
5. Any other non-zero exit is recoverable; the retry ceiling bounds it.
"""

import re
import signal
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Pattern, Sequence, Tuple


class Classification(str, Enum):
    """Outcome class of one encoder invocation."""

    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"
    CANCELLED = "cancelled"


def _signal_codes(*names: str) -> FrozenSet[int]:
    # subprocess reports death-by-signal as -signum; shells report 128 + signum
    codes = set()
    for name in names:
        signum = getattr(signal, name, None)
        if signum is not None:
            codes.update({-int(signum), 128 + int(signum)})
    return frozenset(codes)


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the table.

    A rule matches when the return code is in ``returncodes`` or ``pattern``
    is found in stderr (case-insensitive).
    """

    name: str
    classification: Classification
    returncodes: FrozenSet[int] = frozenset()
    pattern: Optional[Pattern[str]] = None

    def matches(self, returncode: int, stderr: str) -> bool:
        if returncode in self.returncodes:
            return True
        return bool(self.pattern and self.pattern.search(stderr))


def _rx(*alternatives: str) -> Pattern[str]:
    return re.compile("|".join(alternatives), re.IGNORECASE)


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "killed by signal",
        Classification.RECOVERABLE,
        returncodes=_signal_codes("SIGKILL", "SIGTERM", "SIGINT", "SIGHUP", "SIGXCPU", "SIGXFSZ"),
        pattern=_rx(r"received signal \d+", r"\bkilled\b"),
    ),
    ClassificationRule(
        "resource exhausted",
        Classification.RECOVERABLE,
        pattern=_rx(
            r"cannot allocate memory",
            r"out of memory",
            r"\benomem\b",
            r"no space left on device",
            r"resource temporarily unavailable",
            r"too many open files",
        ),
    ),
    ClassificationRule(
        "invalid input",
        Classification.FATAL,
        pattern=_rx(
            r"invalid data found when processing input",
            r"moov atom not found",
            r"could not find codec parameters",
            r"no such file or directory",
            r"does not contain any stream",
            r"output file #?\d* ?does not contain any stream",
            r"permission denied",
        ),
    ),
    ClassificationRule(
        "unsupported encoding request",
        Classification.FATAL,
        pattern=_rx(
            r"unknown encoder",
            r"encoder not found",
            r"unsupported codec",
            r"codec not currently supported in container",
            r"could not write header",
            r"unrecognized option",
            r"option not found",
            r"error parsing (the )?filter",
            r"no such filter",
            r"invalid argument",
        ),
    ),
    ClassificationRule(
        "transient i/o",
        Classification.RECOVERABLE,
        pattern=_rx(
            r"input/output error",
            r"i/o error",
            r"connection (refused|reset|timed out)",
            r"broken pipe",
            r"temporary failure in name resolution",
            r"server returned 5\d\d",
        ),
    ),
)


def classify(
    returncode: int,
    stderr: str,
    rules: Sequence[ClassificationRule] = DEFAULT_RULES,
) -> Tuple[Classification, str]:
    """Classify one encoder exit.

    Returns:
        Tuple of (classification, reason). The reason names the matching rule.
    """
    if returncode == 0:
        return Classification.SUCCESS, "exit 0"

    text = stderr or ""
    for rule in rules:
        if rule.matches(returncode, text):
            return rule.classification, rule.name

    return Classification.RECOVERABLE, f"unrecognized failure (exit {returncode})"
