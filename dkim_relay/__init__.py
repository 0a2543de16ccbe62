"""DKIM signing relay for multi-domain outbound email.

This package signs and forwards messages on behalf of registered domains:

- Per-domain RSA signing keys, encrypted at rest with a master secret
- API keys bound to a domain, hashed with bcrypt
- Delivery through SMTP, an HTTP relay or a local sendmail binary
- Automatic retry of transient failures with a bounded schedule
- Queryable send log with aggregate statistics
- Prometheus metrics and a FastAPI REST API

Example:
    Basic usage with the FastAPI application::

        from dkim_relay.config import load_settings
        from dkim_relay.core import RelayService
        from dkim_relay.api import create_app

        service = RelayService(load_settings())
        app = create_app(service, api_token="secret")
"""

__version__ = "0.1.0"
