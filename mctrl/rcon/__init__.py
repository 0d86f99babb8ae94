"""RCON control-protocol client: packet codec, session, and passthrough queries.

Kept free of FastAPI concerns so it can be reused by the switcher, API routes, and tests.
"""
