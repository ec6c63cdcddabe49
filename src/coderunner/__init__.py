"""Sandboxed code runner service.

This package runs untrusted source code for a learning platform inside
short-lived, network-less Docker containers with memory and CPU ceilings and
a hard wall-clock deadline.  Python, JavaScript, Java and C# are supported.

The top‑level modules include:

* ``config`` – configuration handling for environment variables.
* ``languages`` – the language registry.
* ``workspace`` – per-execution directories holding source and stdin.
* ``executor`` – container orchestration, output collection and cleanup.
* ``service`` – the request pipeline tying the pieces together.
* ``models`` – Pydantic models defining request and response schemas.
* ``api`` – FastAPI application exposing HTTP endpoints.
* ``client`` – HTTP client used by the learning platform.
"""

__version__ = "0.1.0"
