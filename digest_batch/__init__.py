"""
digest_batch -- Daily sales digest: grouped-aggregation batch pipeline.

Fetches one day's transaction records, maps each to a Fact keyed by its
owning agent, groups facts by key behind a barrier, and reduces every
group into exactly one summary notification.  A run is restartable: its
state is persisted after each unit, so a crashed or timed-out run resumes
without re-fetching, re-mapping or re-sending.

Architecture:
    digest_batch/ is a top-level package.  Nothing in digest_kernel/ or
    digest_config/ imports from digest_batch.

Invariants:
    - Every Fact belongs to exactly one FactGroup.
    - Every FactGroup yields at most one dispatched notification per run.
    - Reduce starts only after every map unit has finished.
    - Clock injection (no datetime.now() calls).
    - One failed unit never aborts the run.
"""
