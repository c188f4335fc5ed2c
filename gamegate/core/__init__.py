"""Session-level primitives (events, agent prompt context).

Kept free of FastAPI concerns so it can be reused by API routes, the agent runner, and tests.
"""
