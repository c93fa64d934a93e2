"""
Read-path caching package.

Provides the stale-while-revalidate response cache wrapped around read
handlers, the per-namespace version registry used to invalidate it, and the
stores backing both. Invalidation is by version bump only; cached responses
are never enumerated or deleted by pattern.
"""
