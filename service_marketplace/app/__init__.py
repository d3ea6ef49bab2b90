"""
Marketplace gateway package.

Brokers access to IoT data feeds whose registration and subscriptions live
on the Sui ledger and whose payloads live in Walrus blobs. Key modules:

- app.main: FastAPI app, HTTP routes and the /ws endpoint
- app.adapters: ledger and blob store clients
- app.persistence: API key, usage and history storage strategies
- app.auth: credential validation and access decisions
- app.caching: short-TTL blob cache
- app.data: authorized and preview data retrieval
- app.feeds: provider and device write path
- app.ws: live update connections and message handling
- app.usage: per-credential usage recording
"""
