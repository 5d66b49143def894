"""Detect plan/job associations in agent instructions.

Jobs launched by the plan runner start with an instruction of the form::

    Read the file /path/to/plans/<plan>/<job>.md and execute the agent job

This is a textual convention, not a structured field, so misses are expected.
"""

from .models import JobInfo

READ_PHRASE = "Read the file"
EXECUTE_PHRASE = "and execute the agent job"


def parse_plan_info(content: str) -> tuple[str, str]:
    """Return ``(plan, job)`` from an instruction, or ``("", "")``."""
    if not content or READ_PHRASE not in content or EXECUTE_PHRASE not in content:
        return "", ""

    start = content.find("/")
    if start == -1:
        return "", ""

    rest = content[start:]
    end = rest.find(" and")
    if end == -1:
        end = rest.find(" ")
    if end == -1:
        return "", ""

    path = rest[:end]
    if "/plans/" not in path or not path.endswith(".md"):
        return "", ""

    components = path.split("/")
    if len(components) < 2:
        return "", ""
    return components[-2], components[-1]


class JobTracker:
    """Collects jobs in order of first occurrence, ignoring repeats."""

    def __init__(self):
        self._seen: set[tuple[str, str]] = set()
        self.jobs: list[JobInfo] = []

    def feed(self, text: str, line_index: int) -> JobInfo | None:
        plan, job = parse_plan_info(text)
        if not plan or not job:
            return None
        if (plan, job) in self._seen:
            return None
        self._seen.add((plan, job))
        info = JobInfo(plan=plan, job=job, line_index=line_index)
        self.jobs.append(info)
        return info
