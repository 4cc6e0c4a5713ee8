"""
TEP - Delegated Token and Payment Broker

This package implements a broker that sits between a chat-protocol identity provider (the
delegated-authentication service, DAS) and third-party mini-apps. It exchanges a user's DAS
session for a self-contained bearer token (the TEP token) and guards peer-to-peer transfers
made with that token against an external wallet ledger.

Key Components:
- tokens: KeyStore and TokenCodec for minting and verifying TEP tokens
- delegation: DelegationBroker, the DAS client (client credentials, introspection, exchange, revocation)
- consent: ConsentResolver, which splits requested scopes into pre-approved and consent-required
- exchange: TokenExchangeOrchestrator, the OAuth token endpoint's grant handling
- breaker: CircuitBreaker and BreakerRegistry protecting calls to the ledger
- ledger: TransferLedgerClient, the idempotent P2P transfer protocol
- rooms: room membership checks and room event publishing through the homeserver
- store: persistence interfaces and their SQL implementations
- model: database models
- app: aiohttp service, configuration, handlers, and background tasks

Architecture Overview:
1. Token Exchange:
   - A mini-app presents the user's DAS access token at the token endpoint
   - The token is introspected with the DAS and the local user record is provisioned
   - Sensitive scopes without a prior approval divert the user to a consent page
   - A signed TEP token and a rotating refresh handle are returned

2. Transfers:
   - Mini-apps call the wallet endpoints with a TEP token carrying wallet scopes
   - Every ledger call runs inside a circuit breaker for its operation family
   - Initiate and confirm are guarded by idempotency keys held in Redis

3. Expiry:
   - A background reaper rejects transfers that were never confirmed and notifies their rooms
"""
