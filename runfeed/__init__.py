"""runfeed - fitness feed aggregation over Nostr relays."""
