"""Administrative tooling for Microsoft Graph tenants.

This package exposes configuration loading, token acquisition, a Graph session
whose calls are retried by a resilient executor, and a set of inventory and
permission operations built on top of it.
"""
