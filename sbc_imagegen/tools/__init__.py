"""External tool invocation.

All external commands (formatters, loop/mount utilities, vendor packing
tools) go through a ToolRunner so call sites can be exercised with fakes.
"""

from sbc_imagegen.tools.capabilities import Formatter, ImageMaker, LoaderMerger, Packer
from sbc_imagegen.tools.runner import CommandResult, SubprocessToolRunner, ToolRunner

__all__ = [
    "CommandResult",
    "Formatter",
    "ImageMaker",
    "LoaderMerger",
    "Packer",
    "SubprocessToolRunner",
    "ToolRunner",
]
