"""ICE candidate normalization.

Remote candidates arrive either as `{candidate, sdpMid, sdpMLineIndex}` objects
or as bare transport lines. Everything downstream works on the object form.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, Union

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import CandidateParseError
from ..net.protocol import IceCandidateDict


_CANDIDATE_LINE_RE = re.compile(r"candidate:(\S+) (\d+) (\w+) (\d+) (\S+) (\d+) typ (\w+)(.*)")
_SDP_MID_RE = re.compile(r"sdpMid (\S+)")
_SDP_MLINE_INDEX_RE = re.compile(r"sdpMLineIndex (\d+)")
_UFRAG_RE = re.compile(r"ufrag (\S+)")

_PREFIX = "candidate:"


def normalize(raw: Union[Mapping[str, Any], str, None]) -> Optional[IceCandidateDict]:
    """Return the structured form of a candidate, or None if it can't be parsed.

    Structured input is returned unchanged. A line string is parsed with the
    positional candidate grammar; `sdpMid` defaults to "0", `sdpMLineIndex` to
    0, and `usernameFragment` is only present when the line carries `ufrag`.
    """
    if isinstance(raw, Mapping):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, str):
        return None

    m = _CANDIDATE_LINE_RE.search(raw)
    if m is None:
        return None
    foundation, component, protocol, priority, ip, port, typ, rest = m.groups()

    mid = _SDP_MID_RE.search(rest)
    mline = _SDP_MLINE_INDEX_RE.search(rest)
    ufrag = _UFRAG_RE.search(rest)

    out: IceCandidateDict = {
        "candidate": f"candidate:{foundation} {component} {protocol} {priority} {ip} {port} typ {typ}{rest}",
        "sdpMid": mid.group(1) if mid else "0",
        "sdpMLineIndex": int(mline.group(1)) if mline else 0,
    }
    if ufrag:
        out["usernameFragment"] = ufrag.group(1)
    return out


def to_rtc_candidate(obj: Mapping[str, Any]) -> RTCIceCandidate:
    """Build an aiortc candidate from the structured form."""
    line = obj.get("candidate")
    if not isinstance(line, str) or not line:
        raise CandidateParseError("missing candidate line")
    if line.startswith(_PREFIX):
        line = line[len(_PREFIX):]
    try:
        cand = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise CandidateParseError(f"unparseable candidate line: {line!r}") from e

    mid = obj.get("sdpMid")
    mline = obj.get("sdpMLineIndex")
    if mid is None and mline is None:
        # aiortc refuses candidates that name neither.
        mid, mline = "0", 0
    cand.sdpMid = None if mid is None else str(mid)
    try:
        cand.sdpMLineIndex = None if mline is None else int(mline)
    except (TypeError, ValueError) as e:
        raise CandidateParseError(f"bad sdpMLineIndex: {mline!r}") from e
    return cand


def from_rtc_candidate(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": _PREFIX + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }
