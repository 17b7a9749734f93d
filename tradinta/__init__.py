"""Tradinta Foundry: group-buying Forging Events for the Tradinta marketplace."""
