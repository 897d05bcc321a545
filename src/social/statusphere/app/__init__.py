"""
Statusphere Web Application

The aiohttp application around the OAuth client: login and callback pages, the
status timeline, client metadata, health probes and background tasks.

Key Components:
- server.py: Application factory, cleanup context and middleware
- config.py: Settings and typed AppKeys
- cookies.py: Signed browser session cookie
- handlers/: Request handlers
- tasks.py: Health gauge tick, pending request purge and the Jetstream consumer
- cli.py: Entry point for running the server
- util/: Key generation utilities
"""
