"""Remote mail server synchronization and reconciliation engine.

This package keeps a local mirror of the state of remote mail servers that
expose an HTTP admin API, with features including:

- Full-replace syncs of DNS records, mailboxes, aliases, spam filters and
  backup jobs, each decoded from its own remote payload grammar
- Reachability and version tracking with offline detection
- Append-only server metrics snapshots and backup run history
- Remote-first mutating operations (create/delete/run)
- Prometheus metrics for monitoring
- SQLite persistence for the local mirror

Example:
    Syncing everything of one server::

        from mail_mirror.orchestrator import SyncOrchestrator
        from mail_mirror.persistence import Persistence
        from mail_mirror.sync import SyncEngine

        persistence = Persistence("/data/mail_mirror.db")
        await persistence.init_db()
        result = await SyncOrchestrator(SyncEngine(persistence)).sync_server(1)

Authors:
    Softwell S.r.l.
"""
