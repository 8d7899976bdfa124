import re
import uuid

_JOB_ID_RE = re.compile(r"[0-9a-f]{32}")


def new_job_id() -> str:
    return uuid.uuid4().hex


def is_valid_job_id(job_id: str) -> bool:
    # ids become directory names, anything else never reaches the filesystem
    return _JOB_ID_RE.fullmatch(job_id or "") is not None
