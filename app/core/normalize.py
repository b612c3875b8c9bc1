from __future__ import annotations

import re
from typing import Optional, Tuple

from fastapi import HTTPException

def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    client = getattr(req, "client", None)
    return client.host if client else "0.0.0.0"

def normalize_email(s: str) -> str:
    s = (s or "").strip().lower()
    if "@" not in s or len(s) > 254:
        raise HTTPException(400, "Invalid email")
    return s

def split_display_name(name: Optional[str], email: str) -> Tuple[str, str]:
    """Return (given_name, family_name).

    Falls back to the email local part, split on ``.``/``_`` and capitalised,
    when no usable display name is known.
    """
    parts = (name or "").split()
    if parts:
        return parts[0], " ".join(parts[1:])
    local = (email or "").split("@", 1)[0]
    words = [w.capitalize() for w in re.split(r"[._]", local) if w]
    if not words:
        return "Customer", ""
    return words[0], " ".join(words[1:])

def format_money(amount: float) -> str:
    return f"${amount:.2f}"
