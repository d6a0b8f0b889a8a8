"""Pack repositories into documents that fit byte or token budgets."""

from .output_split import (
    OutputSplitError,
    OutputSplitGroup,
    OutputSplitPart,
    generate_split_output_parts,
)

__all__ = [
    "OutputSplitError",
    "OutputSplitGroup",
    "OutputSplitPart",
    "generate_split_output_parts",
]
