"""askloop - human-in-the-loop JSON-RPC tool server.

Lets an automated agent ask a loosely-coupled UI process for a human
answer without blocking the server's dispatch loop, falling back to an
OS-native dialog when the UI process cannot answer.
"""

__version__ = "0.1.0"
