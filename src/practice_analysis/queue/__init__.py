"""Durable analysis job queue backed by SQLite.

Why not Celery / RQ / a managed queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Jobs already live next to the sessions they score, and every state change the
caller polls for (pending, processing, completed, failed) is a column on those
same rows. The pieces a broker would not give us anyway:

- A single-statement conditional claim ordered by priority then age, with a
  time-bounded lease so a crashed worker's job is reclaimed by the reaper.
- Ordered, separately durable writes (result cache, session, job) so status
  polling never shows a completed job without its results.
- A first-attempt gate in front of the non-idempotent skill-profile blend.

Admission only nudges an in-process ``WorkerPool``; separate ``worker run``
processes poll the same table, so a missed wake-up only delays a job.
"""
