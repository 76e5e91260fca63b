"""GraphQL protocol module.

This module provides :class:`GraphQLModule`, which implements the
``graphql`` protocol: every operation is a single JSON ``POST`` of
``{query, operationName?, variables?}`` to one endpoint, authenticated with
a static credential placed in a header.

GraphQL reports most failures with HTTP 200 and an ``errors`` array, so the
module classifies results itself. A response is successful when ``data`` is
non-null, even alongside ``errors`` (partial success), or when there are no
errors at all. Transport failures never raise out of
:meth:`~GraphQLModule.execute_graphql`; they come back as a synthetic error
with ``extensions.code == "NETWORK_ERROR"``.

See Also:
    https://spec.graphql.org/October2021/ for the wire format.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from handshake.client.response import elapsed_ms
from handshake.client.transport import HttpTransport
from handshake.exceptions import HandshakeError, TransportError
from handshake.models import (
    FieldGroup,
    FieldOption,
    FieldType,
    FlowStepType,
    InjectedAuth,
    ModuleStatus,
    ProtocolAuthenticationFlow,
    ProtocolCapabilities,
    ProtocolExecutionContext,
    ProtocolExecutionResult,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    RevocationResult,
    ShowWhen,
    TokenStatus,
)
from handshake.protocols.base import ProtocolModule, json_mapping

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

INTROSPECTION_TEST_QUERY = "query IntrospectionTest { __schema { queryType { name } } }"
HEALTH_CHECK_QUERY = "query HealthCheck { __typename }"

INTROSPECTION_QUERY = """
query IntrospectionQuery {
  __schema {
    queryType { name }
    mutationType { name }
    subscriptionType { name }
    types { ...FullType }
    directives {
      name
      description
      locations
      args { ...InputValue }
    }
  }
}

fragment FullType on __Type {
  kind
  name
  description
  fields(includeDeprecated: true) {
    name
    description
    args { ...InputValue }
    type { ...TypeRef }
    isDeprecated
    deprecationReason
  }
  inputFields { ...InputValue }
  interfaces { ...TypeRef }
  enumValues(includeDeprecated: true) {
    name
    description
    isDeprecated
    deprecationReason
  }
  possibleTypes { ...TypeRef }
}

fragment InputValue on __InputValue {
  name
  description
  type { ...TypeRef }
  defaultValue
}

fragment TypeRef on __Type {
  kind
  name
  ofType {
    kind
    name
    ofType {
      kind
      name
      ofType {
        kind
        name
        ofType {
          kind
          name
          ofType {
            kind
            name
            ofType {
              kind
              name
              ofType { kind name }
            }
          }
        }
      }
    }
  }
}
"""

_OPERATION_RE = re.compile(r"^(query|mutation|subscription)\b\s*(\w+)?", re.IGNORECASE)
_AUTH_ERROR_WORDS = ("unauthorized", "authentication")

_METADATA = ProtocolModuleMetadata(
    type="graphql",
    display_name="GraphQL",
    description="GraphQL API protocol with query, mutation, and introspection support.",
    version="1.0.0",
    documentation_url="https://graphql.org/learn/serving-over-http/",
    icon="hexagon",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=False,
        supports_token_refresh=False,
        supports_token_revocation=False,
        supports_scopes=False,
        supports_incremental_auth=False,
        supports_offline_access=True,
        supports_pkce=False,
        requires_server_side=False,
        browser_compatible=True,
        supports_request_signing=False,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Modern API integrations",
        "Content management systems",
        "E-commerce platforms",
        "Social media APIs",
        "Real-time applications",
        "Mobile app backends",
        "Headless CMS",
    ],
    example_platforms=[
        "GitHub GraphQL API",
        "Shopify Storefront API",
        "Contentful",
        "Hasura",
        "Apollo Server",
        "Strapi",
        "Hygraph (GraphCMS)",
        "Fauna",
    ],
)


# --- Wire models ---


class GraphQLRequest(BaseModel):
    """One GraphQL operation."""

    query: str
    operation_name: Optional[str] = None
    variables: Optional[dict[str, Any]] = None

    def payload(self) -> dict[str, Any]:
        """The JSON body, omitting unset optional members."""
        body: dict[str, Any] = {"query": self.query}
        if self.operation_name:
            body["operationName"] = self.operation_name
        if self.variables is not None:
            body["variables"] = self.variables
        return body


class GraphQLError(BaseModel):
    message: str
    locations: Optional[list[dict[str, int]]] = None
    path: Optional[list[Any]] = None
    extensions: Optional[dict[str, Any]] = None

    @property
    def code(self) -> Optional[str]:
        if self.extensions and self.extensions.get("code") is not None:
            return str(self.extensions["code"])
        return None


class GraphQLResponse(BaseModel):
    """A GraphQL response document."""

    data: Any = None
    errors: list[GraphQLError] = Field(default_factory=list)
    extensions: Optional[dict[str, Any]] = None

    @field_validator("errors", mode="before")
    @classmethod
    def _null_errors(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def is_success(self) -> bool:
        """``True`` when ``data`` is non-null, or when there are no errors at all."""
        return self.data is not None or not self.errors

    def to_json(self) -> dict[str, Any]:
        """The response document as sent on the wire; ``data`` is always present."""
        document: dict[str, Any] = {"data": self.data}
        if self.errors:
            document["errors"] = [
                e.model_dump(mode="json", exclude_none=True) for e in self.errors
            ]
        if self.extensions is not None:
            document["extensions"] = self.extensions
        return document


def _synthetic_error(message: str, code: str) -> GraphQLResponse:
    return GraphQLResponse(errors=[GraphQLError(message=message, extensions={"code": code})])


class GraphQLModule(ProtocolModule):
    """GraphQL over HTTP with bearer, API key, basic, custom-header or no auth.

    The full schema fetched by :meth:`introspect` is cached on the instance
    until :meth:`clear_schema_cache` is called.
    """

    def __init__(self, transport: Optional[HttpTransport] = None) -> None:
        super().__init__(transport)
        self._schema: Optional[dict[str, Any]] = None

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="endpoint",
                label="GraphQL Endpoint",
                type=FieldType.URL,
                required=True,
                description="The GraphQL API endpoint URL.",
                placeholder="https://api.example.com/graphql",
                group="endpoint",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="authMethod",
                label="Authentication Method",
                type=FieldType.SELECT,
                required=True,
                description="How to authenticate requests.",
                default_value="bearer",
                options=[
                    FieldOption(value="bearer", label="Bearer Token (Most Common)"),
                    FieldOption(value="api-key", label="API Key Header"),
                    FieldOption(value="basic", label="Basic Authentication"),
                    FieldOption(value="custom-header", label="Custom Header"),
                    FieldOption(value="none", label="No Authentication (Public)"),
                ],
                pattern=r"^(bearer|api-key|basic|custom-header|none)$",
                pattern_error="Unsupported authentication method",
                group="authentication",
                order=1,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="authToken",
                label="Auth Token / API Key",
                type=FieldType.SECRET,
                sensitive=True,
                description="Bearer token or API key for authentication.",
                show_when=ShowWhen(field="authMethod", value="none", operator="not_equals"),
                group="authentication",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="authHeaderName",
                label="Header Name",
                type=FieldType.TEXT,
                description="Custom authentication header name.",
                placeholder="X-API-Key",
                group="authentication",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="authHeaderPrefix",
                label="Header Value Prefix",
                type=FieldType.TEXT,
                description="Prefix before the token value.",
                placeholder="Bearer ",
                show_when=ShowWhen(field="authMethod", value="custom-header"),
                group="authentication",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="additionalHeaders",
                label="Additional Headers",
                type=FieldType.JSON,
                description="Extra headers to include in requests (JSON object).",
                placeholder='{"X-Custom-Header": "value"}',
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="timeout",
                label="Request Timeout (ms)",
                type=FieldType.NUMBER,
                default_value=DEFAULT_TIMEOUT_MS,
                min=1000,
                max=300000,
                group="advanced",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="enableIntrospection",
                label="Enable Introspection",
                type=FieldType.CHECKBOX,
                default_value=True,
                group="advanced",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="subscriptionEndpoint",
                label="Subscription Endpoint",
                type=FieldType.URL,
                description="WebSocket endpoint for GraphQL subscriptions.",
                placeholder="wss://api.example.com/graphql",
                group="advanced",
                order=4,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="endpoint", label="GraphQL Endpoint", description="Your GraphQL API URL."),
            FieldGroup(
                id="authentication",
                label="Authentication",
                description="How to authenticate with the GraphQL API.",
            ),
            FieldGroup(
                id="advanced",
                label="Advanced Settings",
                collapsible=True,
                default_collapsed=True,
            ),
        ]

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        """Validate the configuration and, if enabled, probe the endpoint.

        The probe is a minimal introspection query. Errors that mention
        introspection mean the server disables it, which is tolerated; any
        other error fails the step.
        """
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            return self._error_step(
                1, 1, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        auth_method = credentials.get("authMethod") or "bearer"
        if auth_method != "none" and not credentials.get("authToken"):
            return self._error_step(
                1, 1, "Missing Credentials",
                "Authentication token is required.",
                "Auth token is required for non-public APIs",
            )

        if credentials.get("enableIntrospection") is not False:
            result = await self.execute_graphql(
                credentials, GraphQLRequest(query=INTROSPECTION_TEST_QUERY)
            )
            fatal = [e for e in result.errors if "introspection" not in e.message.lower()]
            if fatal:
                self._status = ModuleStatus.ERROR
                unreachable = fatal[0].code == "NETWORK_ERROR"
                return self._error_step(
                    1, 1, "Connection Failed",
                    "Could not reach the GraphQL endpoint."
                    if unreachable
                    else "Failed to connect to GraphQL endpoint.",
                    fatal[0].message,
                )

        self._status = ModuleStatus.AUTHENTICATED
        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="GraphQL Configured",
            description="Your GraphQL endpoint is ready to use.",
            data={
                "endpoint": credentials.get("endpoint"),
                "auth_method": auth_method,
                "has_subscriptions": bool(credentials.get("subscriptionEndpoint")),
            },
        )

    def build_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        """Build the auth headers for *credentials*, plus ``additionalHeaders``.

        ``additionalHeaders`` are merged last and may override auth headers.
        """
        headers: dict[str, str] = {}
        method = credentials.get("authMethod") or "bearer"
        token = credentials.get("authToken")

        if token:
            if method == "bearer":
                headers["Authorization"] = f"Bearer {token}"
            elif method == "api-key":
                headers[credentials.get("authHeaderName") or "X-API-Key"] = str(token)
            elif method == "basic":
                headers["Authorization"] = f"Basic {token}"
            elif method == "custom-header":
                name = credentials.get("authHeaderName") or "Authorization"
                headers[name] = f"{credentials.get('authHeaderPrefix') or ''}{token}"

        headers.update(json_mapping(credentials.get("additionalHeaders"), "Additional headers"))
        return headers

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute_graphql(
        self, credentials: dict[str, Any], request: GraphQLRequest
    ) -> GraphQLResponse:
        """POST *request* to the configured endpoint and decode the response.

        Never raises for transport problems: they are reported as a single
        error with ``extensions.code == "NETWORK_ERROR"``.
        """
        _, _, response = await self._post(credentials, request)
        return response

    async def query(
        self,
        credentials: dict[str, Any],
        query: str,
        variables: Optional[dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> GraphQLResponse:
        return await self.execute_graphql(
            credentials,
            GraphQLRequest(query=query, variables=variables, operation_name=operation_name),
        )

    async def mutate(
        self,
        credentials: dict[str, Any],
        mutation: str,
        variables: Optional[dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> GraphQLResponse:
        return await self.execute_graphql(
            credentials,
            GraphQLRequest(query=mutation, variables=variables, operation_name=operation_name),
        )

    async def _post(
        self, credentials: dict[str, Any], request: GraphQLRequest, endpoint: Optional[str] = None
    ) -> tuple[int, dict[str, str], GraphQLResponse]:
        url = str(credentials.get("endpoint") or endpoint or "")
        try:
            headers = self.build_headers(credentials)
        except HandshakeError as exc:
            return 0, {}, _synthetic_error(str(exc), exc.code)
        headers["Content-Type"] = "application/json"

        try:
            response = await self._transport.request(
                "POST",
                url,
                headers=headers,
                content=json.dumps(request.payload()),
                timeout_ms=int(credentials.get("timeout") or DEFAULT_TIMEOUT_MS),
            )
        except TransportError as exc:
            logger.debug("GraphQL request to %s failed: %s", url, exc)
            return 0, {}, _synthetic_error(str(exc), "NETWORK_ERROR")

        try:
            document = response.json()
        except ValueError:
            document = None
        if not isinstance(document, dict):
            return response.status_code, dict(response.headers), _synthetic_error(
                f"Invalid GraphQL response (HTTP {response.status_code})", "PARSE_ERROR"
            )
        try:
            result = GraphQLResponse.model_validate(document)
        except ValidationError as exc:
            logger.debug("Malformed GraphQL response from %s: %s", url, exc)
            return response.status_code, dict(response.headers), _synthetic_error(
                f"Invalid GraphQL response (HTTP {response.status_code})", "PARSE_ERROR"
            )
        return response.status_code, dict(response.headers), result

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        return InjectedAuth(headers=self.build_headers(context.credentials))

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        """Run the operation carried in ``context.body``.

        A string body is the query itself; a mapping must carry ``query``
        and may carry ``operationName`` and ``variables``.
        """
        started = time.perf_counter()
        body = context.body
        if isinstance(body, str):
            request = GraphQLRequest(query=body)
        elif isinstance(body, dict) and body.get("query"):
            request = GraphQLRequest(
                query=body["query"],
                operation_name=body.get("operationName"),
                variables=body.get("variables"),
            )
        else:
            return ProtocolExecutionResult(
                success=False,
                status_code=400,
                duration_ms=elapsed_ms(started),
                error="Invalid GraphQL request: must include query field",
                error_code="INVALID_REQUEST",
            )

        credentials = dict(context.credentials)
        if context.timeout and not credentials.get("timeout"):
            credentials["timeout"] = context.timeout
        status, headers, result = await self._post(credentials, request, endpoint=context.url)

        first = result.errors[0] if result.errors else None
        document = result.to_json()
        return ProtocolExecutionResult(
            success=result.is_success,
            status_code=status,
            headers=headers,
            body=document,
            raw_body=json.dumps(document),
            duration_ms=elapsed_ms(started),
            error=first.message if first else None,
            error_code=(first.code or "GRAPHQL_ERROR") if first else None,
        )

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    async def introspect(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """Fetch the full schema and cache it.

        Returns:
            ``{"success": True, "schema": ...}`` or
            ``{"success": False, "error": ...}``.
        """
        result = await self.execute_graphql(credentials, GraphQLRequest(query=INTROSPECTION_QUERY))
        if result.errors:
            return {"success": False, "error": result.errors[0].message}
        self._schema = result.data if isinstance(result.data, dict) else None
        return {"success": True, "schema": result.data}

    def get_available_operations(self) -> dict[str, list[str]]:
        """List the root field names of each operation type in the cached schema.

        Returns an empty mapping until :meth:`introspect` has succeeded.
        """
        schema = (self._schema or {}).get("__schema")
        if not isinstance(schema, dict):
            return {}

        types = {t.get("name"): t for t in schema.get("types") or [] if isinstance(t, dict)}
        operations: dict[str, list[str]] = {}
        for kind, key in (
            ("query", "queryType"),
            ("mutation", "mutationType"),
            ("subscription", "subscriptionType"),
        ):
            root = schema.get(key)
            if not root:
                continue
            root_type = types.get(root.get("name")) or {}
            operations[kind] = [f["name"] for f in root_type.get("fields") or []]
        return operations

    def clear_schema_cache(self) -> None:
        self._schema = None

    # ------------------------------------------------------------------ #
    # Token management and health
    # ------------------------------------------------------------------ #

    async def revoke_tokens(self, credentials: dict[str, Any]) -> RevocationResult:
        return RevocationResult(
            success=False,
            error="Token revocation is handled by the identity provider, not GraphQL.",
        )

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        started = time.perf_counter()
        result = await self.execute_graphql(credentials, GraphQLRequest(query=HEALTH_CHECK_QUERY))
        latency = elapsed_ms(started)

        if result.errors:
            error = result.errors[0]
            lowered = error.message.lower()
            auth_error = error.code == "UNAUTHENTICATED" or any(
                word in lowered for word in _AUTH_ERROR_WORDS
            )
            return ProtocolHealthCheckResult(
                healthy=False,
                message="Authentication failed" if auth_error else error.message,
                latency_ms=latency,
                token_status=TokenStatus.INVALID if auth_error else TokenStatus.VALID,
                token_expires_in=-1,
                details={"error": error.message, "code": error.code},
            )

        typename = result.data.get("__typename") if isinstance(result.data, dict) else None
        return ProtocolHealthCheckResult(
            healthy=True,
            message="GraphQL endpoint is responding",
            latency_ms=latency,
            token_status=TokenStatus.VALID,
            token_expires_in=-1,
            details={"typename": typename},
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def parse_operation(query: str) -> tuple[str, Optional[str]]:
        """Return ``(operation_type, operation_name)``; anonymous documents are queries."""
        match = _OPERATION_RE.match(query.strip())
        if match:
            return match.group(1).lower(), match.group(2)
        return "query", None

    @staticmethod
    def format_errors(errors: list[GraphQLError]) -> str:
        """Render *errors* as a numbered list with paths and first locations."""
        lines = []
        for index, error in enumerate(errors, start=1):
            line = f"{index}. {error.message}"
            if error.path:
                line += f" (at {'.'.join(str(p) for p in error.path)})"
            if error.locations:
                loc = error.locations[0]
                line += f" [line {loc.get('line')}, col {loc.get('column')}]"
            lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def build_query(
        type_name: str,
        fields: list[str],
        args: Optional[dict[str, Any]] = None,
        operation: str = "query",
    ) -> str:
        """Build a one-field operation selecting *fields* from *type_name*.

        Example::

            >>> GraphQLModule.build_query("user", ["id", "name"], {"id": 1})
            'query {\\n  user(id: 1) {\\n    id\\n    name\\n  }\\n}'
        """
        arg_text = ""
        if args:
            arg_text = "(" + ", ".join(f"{k}: {json.dumps(v)}" for k, v in args.items()) + ")"
        selection = "\n".join(f"    {f}" for f in fields)
        return f"{operation} {{\n  {type_name}{arg_text} {{\n{selection}\n  }}\n}}"
