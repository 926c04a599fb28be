"""Rich terminal renderers for the plantree CLI."""

from plantree.cli_ui.renderer import RunSummaryRenderer, StatusTableRenderer, ValidationRenderer

__all__ = [
    "RunSummaryRenderer",
    "StatusTableRenderer",
    "ValidationRenderer",
]
