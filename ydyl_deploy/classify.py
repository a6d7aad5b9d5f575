"""
Best-effort inference of a finished workload's outcome from the tail of its log.

Classifiers are pluggable per role. They only see plain log text; a workload that prints
neither sentinel is reported as the role's fallback state, never guessed further.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Protocol, Tuple, Union

from .roles import ServiceType
from .state_store import STATE_FAILED, STATE_SUCCESS, STATE_UNKNOWN

# Printed by the pipeline scripts' error trap / final step.
CDK_FAILURE_SENTINEL = "cdk_pipe.sh 执行失败"
COMPLETION_SENTINEL = "所有步骤完成"

# (state, reason)
Classification = Tuple[str, str]


class LogClassifier(Protocol):
    def classify(self, text: str) -> Classification:
        ...


def strip_xtrace_lines(text: str) -> str:
    """Drop `set -x` echo lines (first non-blank char is '+')."""
    kept = [ln for ln in str(text).split("\n") if not ln.lstrip(" \t").startswith("+")]
    return "\n".join(kept)


@dataclass(frozen=True)
class StructuredLogClassifierV1:
    failure_sentinel: str
    success_sentinel: str = COMPLETION_SENTINEL

    def classify(self, text: str) -> Classification:
        s = strip_xtrace_lines(text)
        if self.failure_sentinel in s:
            return STATE_FAILED, f"log contains failure marker {self.failure_sentinel!r}, see the full log"
        if self.success_sentinel in s:
            return STATE_SUCCESS, ""
        return STATE_UNKNOWN, "cannot determine outcome from log, see the full log"


@dataclass(frozen=True)
class GenericLogClassifierV1:
    success_sentinel: str = COMPLETION_SENTINEL

    def classify(self, text: str) -> Classification:
        if self.success_sentinel in strip_xtrace_lines(text):
            return STATE_SUCCESS, ""
        return STATE_FAILED, "process exited without the completion marker, see the full log"


_CLASSIFIERS: Dict[str, LogClassifier] = {
    ServiceType.CDK.value: StructuredLogClassifierV1(failure_sentinel=CDK_FAILURE_SENTINEL),
}
_DEFAULT_CLASSIFIER: LogClassifier = GenericLogClassifierV1()


def _role_key(role: str) -> str:
    return str(role or "").strip().lower()


def register_classifier(role: str, classifier: LogClassifier) -> None:
    _CLASSIFIERS[_role_key(role)] = classifier


def classifier_for(role: str) -> LogClassifier:
    """
    Exact (case-insensitive) role match first; any other role naming cdk, such as a hand-edited
    "CDK" or "cdk-l2" serviceType, still gets the cdk classifier.
    """
    key = _role_key(role)
    if key in _CLASSIFIERS:
        return _CLASSIFIERS[key]
    if ServiceType.CDK.value in key:
        return _CLASSIFIERS[ServiceType.CDK.value]
    return _DEFAULT_CLASSIFIER


def classify_log_text(role: str, text: Union[str, bytes]) -> Classification:
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    return classifier_for(role).classify(text)
