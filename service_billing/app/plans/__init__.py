"""
Plan catalog package.

Plans are immutable data: a capability record per tier plus the set of
chains whose wallets always take their own wallet slot. Lookups never raise;
unknown names degrade to the Free tier.
"""
