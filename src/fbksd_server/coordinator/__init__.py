"""Task scheduling and workspace lifecycle for the benchmark server.

The coordinator owns four durable components backed by one SQLite database:
the technique registry, the append-only scene corpus, the priority/normal/
notification task queues and the workspace store. Workers lease tasks over
the CLI or HTTP surface, run them through a backend and report outcomes;
the coordinator turns outcomes into workspace transitions and follow-up
tasks. Every state change is a compare-and-set update on one row, so any
number of workers and API processes can share the database.
"""
