import functools
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Package reference grammar:
#   name[#pkg_id][@version][:repo]   or   #pkg_id[@version][:repo]
PKGREF_RE = re.compile(
    r"""
    ^
    (?P<name>[^#@:\s]+)?
    (?:\#(?P<pkg_id>[^@:\s]+))?
    (?:@(?P<version>[^:\s]+))?
    (?::(?P<repo>[^\s]+))?
    $
    """,
    re.VERBOSE,
)

_SEGMENT_RE = re.compile(r"[0-9]+|[A-Za-z]+")


def vercmp(a: Optional[str], b: Optional[str]) -> int:
    """
    Segment-wise version comparison.
    Returns:
      - negative if a < b
      - zero if equal
      - positive if a > b
    Digit runs compare numerically, letter runs lexicographically, and a
    digit run sorts above a letter run (1.10 > 1.9, 2 > beta).
    Separators ('.', '-', '_', '+') and a leading 'v' only delimit segments.
    """
    pa = _SEGMENT_RE.findall((a or "").lstrip("vV"))
    pb = _SEGMENT_RE.findall((b or "").lstrip("vV"))

    for xa, xb in zip(pa, pb):
        a_num, b_num = xa.isdigit(), xb.isdigit()
        if a_num and b_num:
            na, nb = int(xa), int(xb)
            if na != nb:
                return (na > nb) - (na < nb)
        elif a_num != b_num:
            return 1 if a_num else -1
        elif xa != xb:
            return (xa > xb) - (xa < xb)

    # if all zipped parts equal, longer sequence wins
    return (len(pa) > len(pb)) - (len(pa) < len(pb))


def version_collation(a: str, b: str) -> int:
    """sqlite3 collation callable; ties broken on raw text so ordering is total."""
    c = vercmp(a, b)
    if c == 0:
        c = (a > b) - (a < b)
    return c


@functools.total_ordering
@dataclass(frozen=True)
class Version:
    """Orderable wrapper around a version string."""

    text: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return False
        return vercmp(self.text, other.text) == 0

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return vercmp(self.text, other.text) < 0

    def __hash__(self) -> int:
        segments = _SEGMENT_RE.findall(self.text.lstrip("vV"))
        return hash(tuple(int(s) if s.isdigit() else s for s in segments))

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class PackageRef:
    """
    A user-supplied package reference.

    Usage:
      PackageRef.parse("bat")
      PackageRef.parse("bat#bat.upstream@0.24.0:bincache")
    """

    name: Optional[str] = None
    pkg_id: Optional[str] = None
    version: Optional[str] = None
    repo: Optional[str] = None

    @staticmethod
    def parse(s: str) -> "PackageRef":
        """Raises ValueError if the reference names neither a package nor an id."""
        if not isinstance(s, str):
            raise ValueError("PackageRef.parse expects a string")
        s = s.strip()
        m = PKGREF_RE.match(s)
        if not m or not (m.group("name") or m.group("pkg_id")):
            raise ValueError(f"Invalid package reference: {s!r}")
        d = m.groupdict()
        return PackageRef(name=d["name"], pkg_id=d["pkg_id"], version=d["version"], repo=d["repo"])

    @property
    def is_qualified(self) -> bool:
        return bool(self.repo)

    def as_db_filters(self) -> Dict[str, Any]:
        """Non-None fields keyed by PackageFilter attribute names."""
        out = {
            "name": self.name,
            "pkg_id": self.pkg_id,
            "version": self.version,
            "repo_name": self.repo,
        }
        return {k: v for k, v in out.items() if v is not None}

    def __str__(self) -> str:
        out = self.name or ""
        if self.pkg_id:
            out += f"#{self.pkg_id}"
        if self.version:
            out += f"@{self.version}"
        if self.repo:
            out += f":{self.repo}"
        return out
