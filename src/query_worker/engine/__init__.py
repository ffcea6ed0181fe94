"""Job-processing engine: claim, execute, encode and persist query jobs.

The engine consumes two contracts, ``QueueClient`` (atomic claim / store
result) and ``QueryExecutor`` (run an opaque query), and never implements
queue mutual exclusion itself. A ``WorkerPool`` runs N ``QueryWorker`` loops
on OS threads; every worker owns its connections and the workers share
nothing but a stop event.
"""
