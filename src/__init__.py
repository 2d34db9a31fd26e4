"""Document Generation - asynchronous LLM documentation jobs.

This service turns a project description into documentation:
- Jobs are accepted immediately and run in the background
- Each job walks a (backend, model) fallback chain with retries
- Results are stored per request id and read back by polling
"""

__version__ = "0.1.0"
