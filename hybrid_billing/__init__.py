"""
Hybrid billing.

Plans and executes token consumption across subscription, one-time
purchase and bring-your-own-key funding sources.
"""
