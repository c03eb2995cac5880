"""
Charitrace Django Application

A donation platform where supporters give to charities and their projects
through Stripe, and every successful donation is mirrored onto a blockchain
smart contract for public auditability.

Features:
- Charity and project management with per-charity managers
- Stripe PaymentIntent checkout, confirmation and webhooks
- Blockchain verification of successful donations with retry handling
- Reconciliation between the database and the on-chain ledger
- Donation receipts (optionally DKIM-signed)
- Platform and per-charity donation statistics
"""
