"""
Persistence package for Billing Service.

`BillingStore` is the storage contract; `PostgreSQLStore` backs production
and `InMemoryStore` backs local runs and tests with the same semantics.
"""
