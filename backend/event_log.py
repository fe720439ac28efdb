import json
import os

# Append-only JSON Lines audit log of internet outages/restorations
LOG_PATH = os.path.join(os.getcwd(), 'logs', 'internet-events.log')
MAX_LINES = 2000


def configure(log_dir, log_file):
    """Points the audit log at ``log_dir/log_file`` (relative to the cwd)."""
    global LOG_PATH
    LOG_PATH = os.path.join(os.getcwd(), log_dir, log_file)
    return LOG_PATH


def get_log_path():
    return LOG_PATH


def _clamp_limit(limit):
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = 200
    return max(1, min(MAX_LINES, limit or 200))


def _read_lines():
    if not os.path.exists(LOG_PATH):
        return None
    with open(LOG_PATH, 'r', encoding='utf-8') as f:
        return [line for line in f.read().split("\n") if line]


def _parse(line):
    try:
        return json.loads(line)
    except ValueError:
        return {"raw": line}


def append_event(event):
    """Appends one record as a single JSON line."""
    os.makedirs(os.path.dirname(LOG_PATH), exist_ok=True)
    with open(LOG_PATH, 'a', encoding='utf-8') as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")


def read_tail(limit=200):
    """Last ``limit`` records, oldest first."""
    lines = _read_lines()
    if lines is None:
        return {"path": LOG_PATH, "count": 0, "lines": []}
    parsed = [_parse(l) for l in lines[-_clamp_limit(limit):]]
    return {"path": LOG_PATH, "count": len(parsed), "lines": parsed}


def read_range(offset=0, limit=200):
    """Records ``offset .. offset+limit`` counted from the start of the file."""
    try:
        offset = max(0, int(offset))
    except (TypeError, ValueError):
        offset = 0
    limit = _clamp_limit(limit)

    lines = _read_lines()
    if lines is None:
        return {"path": LOG_PATH, "offset": 0, "limit": limit, "total": 0, "count": 0, "lines": []}

    page = [_parse(l) for l in lines[offset:offset + limit]]
    return {
        "path": LOG_PATH,
        "offset": offset,
        "limit": limit,
        "total": len(lines),
        "count": len(page),
        "lines": page,
    }
