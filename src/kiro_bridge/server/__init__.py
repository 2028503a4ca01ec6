"""
Bridge Server
=============

FastAPI app, uvicorn-backed API server and the bootstrap that wires them.
"""
