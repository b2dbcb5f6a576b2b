"""Stock reconciliation for crew-reported material usage."""
