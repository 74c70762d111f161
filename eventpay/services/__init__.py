"""Domain services: gateways, settlement, ledger, payouts, refunds."""
