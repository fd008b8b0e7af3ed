from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class SurfaceInfo:
    name: str
    display_name: str
    base_url: str


# The bank has shipped two generations of its web banking. Both are still reachable for some accounts.
KNOWN_SURFACES: Mapping[str, SurfaceInfo] = {
    "api": SurfaceInfo(name="api", display_name="DKB banking (JSON:API, banking.dkb.de)", base_url="https://banking.dkb.de"),
    "web": SurfaceInfo(name="web", display_name="DKB legacy web banking (HTML, www.dkb.de)", base_url="https://www.dkb.de"),
}
