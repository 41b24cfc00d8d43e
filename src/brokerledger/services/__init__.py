"""
Services - identity resolution, ingestion, reconciliation and pricing.

Modules:
- identity_resolver: SecurityIdentityResolver
- reference_catalog: local bond and stock catalogs
- statement_tracker: ingested statement periods
- position_reconciler: holdings and cost basis
- ingestion: IngestionCoordinator
- price_sync: PriceSyncJob
- valuation: portfolio valuation
- market: MOEX ISS client and quote cache
"""
