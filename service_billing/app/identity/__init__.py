"""
Identity package.

Resolves a (wallet, chain) pair to a primary or secondary identity. The plan
on a resolved identity is always read live from the primary. The resilient
resolver adds bounded retries and a stale last-known fallback.
"""
