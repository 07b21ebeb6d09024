"""
Gantz - Expose local command-line tools to remote LLM clients.

Describe tools in a YAML file, run them on your own machine, and reach them
through a public relay endpoint.

Architecture:
- gantz.yaml is parsed into an immutable ToolRegistry
- Calls arrive over one long-lived relay connection
- Each call runs as its own child process, bounded by a timeout and an
  output cap, with arguments passed as argv elements (never through a shell)
- Results go back over the same connection, correlated by request id
"""

__version__ = "0.4.0"
__author__ = "Gantz Team"
__license__ = "Apache-2.0"

from gantz.tools.registry import ToolRegistry, ToolSource
from gantz.tools.executor import ToolExecutor
from gantz.service import Tunnel

__all__ = [
    "ToolRegistry",
    "ToolSource",
    "ToolExecutor",
    "Tunnel",
    "__version__",
]
