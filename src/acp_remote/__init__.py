"""acp-remote: WebSocket bridge from ACP clients to locally spawned coding agents.

Each WebSocket connection gets an agent subprocess speaking newline-delimited
JSON-RPC over stdio. ``session/new`` requests that carry a git remote get an
isolated worktree; ``session/prompt`` turns are committed and pushed after the
agent answers.
"""

__version__ = "0.1.0"
