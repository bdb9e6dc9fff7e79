"""
Turns a Frame description into rich renderables.
"""
from rich.align import Align
from rich.console import Group, RenderableType
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tui.frame import Frame, Row


def _row_style(row: Row) -> str:
    style = "bold" if row.unread else "dim"
    if row.error:
        style = "red"
    if row.selected:
        style += " reverse"
    return style


def render_rows(frame: Frame) -> RenderableType:
    table = Table.grid(expand=True, padding=(0, 1))
    table.add_column(width=2, no_wrap=True)
    table.add_column(ratio=3, no_wrap=True, overflow="ellipsis")
    table.add_column(ratio=2, no_wrap=True, overflow="ellipsis", justify="right")
    table.add_column(width=7, no_wrap=True, justify="right")

    if not frame.rows:
        return Text("Nothing here yet. Press r to refresh.", style="dim italic")

    for row in frame.rows:
        flag = "★" if row.starred else ("⟳" if row.busy else ("!" if row.error else ""))
        style = _row_style(row)
        table.add_row(
            Text(flag, style="yellow" if row.starred else style),
            Text(row.text, style=style),
            Text(row.detail, style="red" if row.error else "cyan"),
            Text(row.badge, style=style),
        )
    return table


def render_body(frame: Frame) -> RenderableType:
    text = Text()
    for index, line in enumerate(frame.body or ()):
        if index:
            text.append("\n")
        if line.startswith("#"):
            text.append(line.lstrip("# "), style="bold underline")
        elif line.startswith("> "):
            text.append(line, style="italic")
        elif line.startswith("    "):
            text.append(line, style="green")
        else:
            text.append(line)
    return text


def render_frame(frame: Frame) -> RenderableType:
    """Full-screen layout: title bar, content, status bar, plus an optional popup."""
    layout = Layout()
    layout.split_column(
        Layout(name="header", size=1),
        Layout(name="main"),
        Layout(name="footer", size=2),
    )

    header = Text(f" termfeed · {frame.title}", style="bold white on blue", no_wrap=True, overflow="ellipsis")
    if frame.body is not None:
        start, total = frame.scroll
        if total:
            header.append(f"  [{min(start + len(frame.body), total)}/{total}]", style="white on blue")
    layout["header"].update(header)

    content = render_body(frame) if frame.body is not None else render_rows(frame)
    if frame.popup is not None:
        popup = Panel(
            Text("\n".join(frame.popup.lines)),
            title=frame.popup.title,
            border_style="yellow",
            expand=False,
        )
        content = Align.center(popup, vertical="middle")
    layout["main"].update(content)

    layout["footer"].update(Group(
        Text(frame.status, style="yellow", no_wrap=True, overflow="ellipsis"),
        Text(frame.hints, style="dim", no_wrap=True, overflow="ellipsis"),
    ))
    return layout
