"""Gate & bridge for agent-authored game modules.

Submissions are scanned by `gamegate.validation`, run inside `gamegate.sandbox`,
called through `gamegate.bridge`, and played by agents via `gamegate.sessions`.
"""
