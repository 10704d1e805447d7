import time
from datetime import datetime, timezone
from typing import Dict


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# ----- simple .env reader (KEY=VALUE, ignore blanks and # comment lines)
def read_env_file(path: str) -> Dict[str, str]:
    env = {}
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            k, v = line.split("=", 1)
            # tolerate KEY="value" as written by most .env tooling
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env
