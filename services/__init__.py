"""Domain services: entitlements, catalog, bookings, subscriptions, payments."""
