"""Transport-agnostic results of the login and logout operations.

Every public operation of :class:`gatehouse.service.auth.LoginOrchestrator`
returns exactly one of these. The HTTP layer turns ``Redirect`` into a 303,
``View`` into a rendered envelope and ``Denied`` into a flashed message plus a
redirect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

Flash = Tuple[str, str]


@dataclass
class Redirect:
    path: str
    flash: Optional[Flash] = None
    # Set when the session id was rotated and the client must switch cookies.
    session_id: Optional[str] = None


@dataclass
class View:
    name: str
    context: Dict = field(default_factory=dict)
    flash: Optional[Flash] = None
    session_id: Optional[str] = None


@dataclass
class Denied:
    message: str
    redirect_to: str = "/login"
    session_id: Optional[str] = None

    @property
    def flash(self) -> Flash:
        return ("error", self.message)


Outcome = Union[Redirect, View, Denied]
