from __future__ import annotations

import hashlib
from pathlib import PurePath

def blake2b_hex(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()

def normalize_content(raw_text: str) -> str:
    """Normalize raw note text so cosmetic edits don't change the fingerprint.

    Line endings become LF, trailing whitespace is dropped from every line and
    trailing blank lines are removed. None of these affect indexed fields.
    """
    text = raw_text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)

def fingerprint(raw_text: str) -> str:
    return blake2b_hex(normalize_content(raw_text).encode("utf-8"))

def doc_id_for(rel_path: str | PurePath) -> str:
    """Stable document id for a source path relative to the notes root."""
    rel = str(rel_path).replace("\\", "/")
    return blake2b_hex(rel.encode("utf-8"))[:24]

def entry_id_for(doc_id: str, ordinal: int) -> str:
    """Id of the `ordinal`-th outline entry (task, meeting, heading) of a document."""
    return blake2b_hex(f"{doc_id}#{ordinal}".encode("utf-8"))[:24]
