"""
Bookshelf Application Layer

This package implements the web application layer using aiohttp.

Key Components:
- server.py: Web server configuration, middleware and routes
- config.py: Configuration management using Pydantic settings
- cli.py: Logging bootstrap and the `bookshelf` entry point
- handlers/: Request handlers for OAuth, book records and internal endpoints
- util/: Key generation utilities

The application uses several middleware layers:
- Error middleware rendering `BookshelfException` as JSON
- Statsd middleware for metrics collection
- Sentry middleware for error reporting
"""
