"""Booking and payment reconciliation core for the rental platform."""
