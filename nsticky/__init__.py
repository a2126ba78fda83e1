"""nsticky - sticky windows for niri

Event-driven sticky window daemon for the niri compositor.

This package provides a long-running daemon that:
- Maintains a resilient IPC connection to niri's event stream
- Moves every sticky window onto each newly focused workspace
- Parks staged windows on a reserved "stage" workspace until recalled
- Exposes a control socket for the nsticky CLI

License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
