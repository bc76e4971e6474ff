# src/peerlink/http_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

Json = Dict[str, Any]


def http_json(method: str, url: str, body: Optional[Json] = None, timeout_s: float = 10.0) -> Json:
    """Small JSON-over-HTTP helper.

    Never raises for transport problems. Failures come back as
      {"ok": False, "error": <class>, ...}
    and a successful non-object body is wrapped as {"ok": True, "data": ...}.
    """
    method = method.upper().strip()
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    data: Optional[bytes] = None

    if body is not None:
        data = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
            status = int(getattr(resp, "status", 200) or 200)
    except urllib.error.HTTPError as e:
        try:
            raw = e.read().decode("utf-8", errors="replace")
        except OSError:
            raw = ""
        return {"ok": False, "error": "http_error", "status": int(getattr(e, "code", 0) or 0), "raw": raw}
    except urllib.error.URLError as e:
        return {"ok": False, "error": "url_error", "reason": str(getattr(e, "reason", e))}
    except (TimeoutError, OSError) as e:
        return {"ok": False, "error": "io_error", "reason": repr(e)}

    if not raw.strip():
        return {"ok": True, "status": status}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"ok": False, "error": "bad_json", "raw": raw}
    if isinstance(parsed, dict):
        parsed.setdefault("ok", True)
        return parsed
    return {"ok": True, "data": parsed}
