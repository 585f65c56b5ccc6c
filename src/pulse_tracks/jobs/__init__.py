"""Song job pipeline: durable store, stage workers and callback reconciliation.

A job moves through two externally-triggered stages. Lyrics are produced by a
blocking text-generation call; audio is submitted to a generation service
that reports back later through a callback addressed by job id. Credits are
debited exactly when the audio stage claims a job and refunded at most once
if that stage cannot deliver an artifact.

Coordination between overlapping worker invocations relies only on the
database: every claim and every ledger-coupled transition is a single
status-guarded transaction.
"""
