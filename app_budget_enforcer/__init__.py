"""
App Budget Enforcer
===================

Keeps a daily minute budget for a set of watched applications. Foreground usage
is observed from a cumulative usage source, deducted from a persisted ledger by
two independently scheduled pollers, and an intervention is dispatched when the
budget runs out while a watched application is in front.
"""

VERSION = "1.0.0"

LOGGER_NAME = "app-budget-agent"
