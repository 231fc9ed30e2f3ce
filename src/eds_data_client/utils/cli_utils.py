from rich.console import Console
from rich.table import Table


def get_rich_console() -> Console: return Console(stderr=True)


def human_bytes(value: int) -> str:
    """1536 -> '1.5 KB'. Display only, never fed back into accounting."""
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


def nodes_table(nodes) -> Table:
    table = Table(title="Storage nodes")
    table.add_column("ID", style="dim")
    table.add_column("Email")
    table.add_column("Total", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Reserved", justify="right")
    table.add_column("Available", justify="right")
    table.add_column("Active")
    for n in nodes:
        table.add_row(
            str(n.id),
            n.email,
            human_bytes(n.total_space),
            human_bytes(n.used_space),
            human_bytes(n.reserved_space),
            human_bytes(n.available_space),
            "yes" if n.is_active else "no",
        )
    return table
