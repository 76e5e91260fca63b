"""handshake -- a pluggable framework of API authentication and transport protocols.

Every protocol (OAuth 2.0 with PKCE, OAuth 2.0 Authorization Code, GraphQL,
WebSocket, raw cURL) is a module implementing one shared contract, so callers
can configure, authenticate and execute requests without protocol-specific
code. Credentials are plain mappings that the caller stores; modules hand back
refreshed values for the caller to persist.

Typical library use::

    from handshake.protocols import create_default_registry

    module = create_default_registry().create("graphql")
    result = await module.execute_request(context)

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the entire package.
    protocols: The module contract, flow states and the registry.
    plugins: The built-in protocol modules.
    router: Execution router over the registry.
    curl: cURL command parsing and placeholder substitution.
    pkce: PKCE verifiers, challenges and CSRF state tokens.
    config: XDG-aware configuration and credential profiles.
    exceptions: Exception hierarchy with exit-code mapping.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"
