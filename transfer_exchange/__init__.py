"""Transfer marketplace core: fares, sealed-bid jobs, offer acceptance and payouts."""
