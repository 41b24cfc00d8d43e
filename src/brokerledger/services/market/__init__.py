"""Market data: MOEX ISS client and quote cache."""
