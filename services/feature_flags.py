# User value: This file lets operators switch pipeline behaviour on or off without a deploy.
import os


def _flag(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


FEATURE_AUTO_SECOND_PASS = _flag("FEATURE_AUTO_SECOND_PASS", False)
FEATURE_AUTONOMOUS_COMMIT = _flag("FEATURE_AUTONOMOUS_COMMIT", True)
FEATURE_QUEUE_ORCHESTRATION = _flag("FEATURE_QUEUE_ORCHESTRATION", True)


# User value: low-confidence uploads get verified without someone pressing a button.
def is_auto_second_pass_enabled() -> bool:
    return FEATURE_AUTO_SECOND_PASS


# User value: high-confidence uploads land in the library without waiting for a reviewer.
def is_autonomous_commit_enabled() -> bool:
    return FEATURE_AUTONOMOUS_COMMIT


def is_queue_orchestration_enabled() -> bool:
    return FEATURE_QUEUE_ORCHESTRATION
