"""Domain layer (pure logic).

- Keep fairness math, round rules and error types here.
- Avoid I/O: no DB sessions, no HTTP/FastAPI, no Redis, no RPC.
- Prefer deterministic functions (time/random passed in as arguments if needed).
  The only exception is seed generation in commitment.py, which must draw
  from the OS CSPRNG.
"""
