"""
Trace identifiers.

    app-<applicationId>.req-<requestId>      known application
    temp.req-<requestId>                     new build, before the app row exists

Development log folders append `_<timestamp>`. Every trace of an application
starts with `app-<applicationId>.`, which is what ownership checks rely on.
"""

import re
from typing import Optional, Tuple

TEMPORARY_APPLICATION_ID = "temp"

LOG_FOLDER_PATTERN = re.compile(r'^app-[^.]+\.req-([^_]+)_(\d+)$')


def trace_prefix(application_id: str) -> str:
    return f"app-{application_id}."


def build_trace_id(request_id: str, application_id: Optional[str] = None) -> str:
    if application_id:
        return f"app-{application_id}.req-{request_id}"
    return f"{TEMPORARY_APPLICATION_ID}.req-{request_id}"


def is_temporary(trace_id: str) -> bool:
    return trace_id.startswith(f"{TEMPORARY_APPLICATION_ID}.")


def promote_trace_id(trace_id: str, application_id: str) -> str:
    """Replace the temporary placeholder with the real application id"""
    if not is_temporary(trace_id):
        return trace_id
    return f"app-{application_id}" + trace_id[len(TEMPORARY_APPLICATION_ID):]


def belongs_to(trace_id: str, application_id: str) -> bool:
    """True when trace_id (or a log folder name) carries the application's prefix"""
    return bool(application_id) and trace_id.startswith(trace_prefix(application_id))


def parse_log_folder(folder_name: str) -> Optional[Tuple[str, int]]:
    """Split `app-<id>.req-<requestId>_<timestamp>` into (request_id, timestamp)"""
    match = LOG_FOLDER_PATTERN.match(folder_name)
    if not match:
        return None
    return match.group(1), int(match.group(2))
