"""
flamefuse - Multi-Context Profiling and Telemetry Aggregation

Collects performance telemetry from a main execution context and any
number of worker contexts, then produces:
- Call trees in the Chrome DevTools .cpuprofile shape
- Multi-track flame charts in the speedscope file format
"""

__version__ = "0.1.0"

from flamefuse.core.config import FlameFuseConfig
from flamefuse.profiling.session import ProfilingSession

__all__ = ["ProfilingSession", "FlameFuseConfig", "__version__"]
