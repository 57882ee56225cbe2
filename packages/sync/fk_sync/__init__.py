"""
Fluidkeys Team Sync

Keeps a local, signature-verified copy of each team roster the user belongs to,
certifies and imports team members' keys into GnuPG, and follows requests to
join teams through to approval or expiry.
"""

__version__ = "0.1.0"
