"""Task scheduler: admission, dispatch queue, worker pool, retries, and dead letters.

Everything runs against one SQLite file. Queue state changes are conditional
``UPDATE``/``DELETE`` statements, so several ``taskflow worker`` processes can
share a database without a broker:

- ``queue`` leases ready jobs by priority, then FIFO, with a visibility timeout.
- ``worker`` runs handlers in a thread pool and enforces the per-task timeout.
- ``retry`` applies exponential backoff and moves exhausted jobs to dead letters.
- ``ledger`` keeps one record per attempt plus the retry sub-log.
"""
