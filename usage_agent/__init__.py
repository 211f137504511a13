"""
EMM Usage Agent
===============

Folds threshold notifications from a screen-time monitoring host into per-app
daily usage, reports usage to the EMM backend and shields apps whose daily
limit is used up.
"""

VERSION = "1.0.0"
