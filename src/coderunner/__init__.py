"""Session-isolated code runner.

This package runs user-submitted Python, Java, JavaScript and C++ programs
inside per-client working directories and streams their output back as
typed frames.

The top-level modules include:

* ``config`` - configuration handling for environment variables.
* ``sessions`` - per-client workspaces and their lifetime.
* ``paths`` / ``policy`` - path confinement and the source denylist.
* ``dependencies`` - best-effort package installation before a run.
* ``runners`` - compile and run steps for each language.
* ``registry`` / ``stream`` / ``supervisor`` - process ownership, output
  framing and timeouts.
* ``engine`` / ``janitor`` - the orchestration of a run and the periodic
  cleanup of idle sessions.
* ``api`` - FastAPI application exposing HTTP endpoints.
"""

__version__ = "0.1.0"
