"""Status view: a read-only projection over patchkit's persisted state.

Modules
-------
projection
    ``StatusProjection`` reads the artifact store, the patch set, the
    version marker, ``last-run.json``, and the audit log, and produces a
    frozen ``StatusSnapshot``.
renderer
    ``StatusRenderer`` turns snapshots, run reports, and artifact lists
    into Rich renderables for the CLI.
"""
