"""
Normalized records produced by feed parsing
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel


class ParsedEntry(BaseModel):
    """
    One feed entry, independent of the syndication dialect it came from.
    """
    title: str
    link: Optional[str] = None
    guid: Optional[str] = None
    published_at: Optional[datetime] = None
    summary: str = ""


class ParsedFeed(BaseModel):
    """
    Result of parsing one feed document.
    `skipped` counts entries dropped because they could not be normalized.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    entries: List[ParsedEntry] = []
    skipped: int = 0
