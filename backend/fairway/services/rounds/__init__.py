"""Round lifecycle services: outing launch, marker transfers and reconciliation.

Routes and socket handlers import from here so that transport concerns
stay separate from the round/outing state rules.
"""
