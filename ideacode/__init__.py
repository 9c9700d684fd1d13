"""ideacode - a terminal coding agent driven by a streamed tool-use loop."""

__version__ = "0.1.0"

from ideacode.config import Config
from ideacode.main import main

__all__ = ["Config", "main", "__version__"]
