"""
Frame descriptions: what the screen should show, independent of the terminal library.
"""
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class Row:
    text: str
    selected: bool = False
    badge: str = ""
    detail: str = ""
    unread: bool = False
    starred: bool = False
    error: bool = False
    busy: bool = False


@dataclass(frozen=True)
class Popup:
    title: str
    lines: Tuple[str, ...]


@dataclass(frozen=True)
class Frame:
    title: str
    rows: Tuple[Row, ...] = ()
    body: Optional[Tuple[str, ...]] = None
    status: str = ""
    hints: str = ""
    popup: Optional[Popup] = None
    scroll: Tuple[int, int] = (0, 0)
