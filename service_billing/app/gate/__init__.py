"""
Quota enforcement package.

The gate composes identity resolution, wallet ledger, trial clock and usage
into one ordered rule list and returns Allow or Deny. It never writes.
"""
