"""Execution engine for asynchronous document generation.

Takes a GenerationRequest and runs it to a single terminal record, while
callers poll for status through the result store.

Architecture (bottom-up):
- engine_runner: Per-attempt deadline and retry with backoff
- chain_runner: Fallback across (backend, model) links
- section_splitter: Splits generated markdown into titled sections
- result_store: Job records in Postgres, on disk, or in memory
- rate_limiter: Fixed-window submission limiter per caller
- job_manager: Submission, background execution, terminal writes
- status_reader: Read-only status view for polling
"""
