"""API description parsing.

Turns the machine-readable description served at the gateway root (Swagger 2
as emitted by PostgREST, or OpenAPI 3) into a ``Catalog`` of tables and RPC
functions. Parsing never raises: shapes it does not recognise are skipped, so
a malformed document degrades to an empty catalog.
"""

import logging
from typing import Any

from rls_auditor.models.audit import (
    Catalog,
    Column,
    FunctionParameter,
    RpcFunction,
    TableSchema,
)

logger = logging.getLogger(__name__)

RPC_PREFIX = "/rpc/"
TABLE_OPERATIONS = ("GET", "POST", "PATCH", "DELETE")
RESERVED_QUERY_PARAMS = ("select", "order", "limit", "offset", "on_conflict")
DEFAULT_RETURN_TYPE = "json"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _ref_name(ref: Any) -> str | None:
    """Last path component of a JSON reference such as ``#/definitions/users``."""
    if not isinstance(ref, str) or "/" not in ref:
        return None
    return ref.rstrip("/").rsplit("/", 1)[-1] or None


def _resolve_ref(spec: dict[str, Any], node: Any) -> dict[str, Any]:
    """Follow a local ``$ref`` (one level) to its target object."""
    node = _as_dict(node)
    ref = node.get("$ref")
    if not isinstance(ref, str) or not ref.startswith("#/"):
        return node
    target: Any = spec
    for part in ref[2:].split("/"):
        target = _as_dict(target).get(part)
        if target is None:
            return {}
    return _as_dict(target)


def _definitions(spec: dict[str, Any]) -> dict[str, Any]:
    definitions = _as_dict(spec.get("definitions"))
    if definitions:
        return definitions
    return _as_dict(_as_dict(spec.get("components")).get("schemas"))


def _is_reserved(name: str) -> bool:
    return name.startswith(RESERVED_QUERY_PARAMS)


def _query_columns(spec: dict[str, Any], operation: dict[str, Any]) -> list[Column]:
    columns: list[Column] = []
    seen: set[str] = set()
    parameters = operation.get("parameters")
    if not isinstance(parameters, list):
        return columns

    for raw in parameters:
        param = _resolve_ref(spec, raw)
        name = param.get("name")
        if param.get("in") != "query" or not isinstance(name, str) or not name:
            continue
        if _is_reserved(name) or name in seen:
            continue
        schema = _as_dict(param.get("schema"))
        # Swagger 2 puts type/format on the parameter itself
        col_type = schema.get("type") or param.get("type") or schema.get("format") or param.get("format")
        col_format = schema.get("format") or param.get("format")
        seen.add(name)
        columns.append(Column(
            name=name,
            type=str(col_type or "unknown"),
            format=col_format,
            description=str(param.get("description") or ""),
        ))
    return columns


def _merge_definition_columns(
    columns: list[Column],
    definition: dict[str, Any],
) -> list[Column]:
    """Overlay definition metadata; add columns only found in the definition."""
    properties = _as_dict(definition.get("properties"))
    required = definition.get("required")
    required = set(required) if isinstance(required, list) else set()

    by_name = {c.name: i for i, c in enumerate(columns)}
    merged = list(columns)

    for col_name, raw_schema in properties.items():
        col_schema = _as_dict(raw_schema)
        col_type = col_schema.get("type")
        col_format = col_schema.get("format")
        description = col_schema.get("description")

        if col_name in by_name:
            existing = merged[by_name[col_name]]
            merged[by_name[col_name]] = existing.model_copy(update={
                "type": str(col_type) if col_type else existing.type,
                "format": col_format or existing.format,
                "required": col_name in required,
                "description": existing.description or str(description or ""),
            })
        else:
            merged.append(Column(
                name=col_name,
                type=str(col_type or "unknown"),
                format=col_format,
                required=col_name in required,
                description=str(description or ""),
            ))
    return merged


def _parse_table(spec: dict[str, Any], name: str, methods: dict[str, Any]) -> TableSchema | None:
    operations: list[str] = []
    description = ""
    for method, details in methods.items():
        op = str(method).upper()
        if op in TABLE_OPERATIONS:
            operations.append(op)
            details = _as_dict(details)
            description = description or str(details.get("description") or details.get("summary") or "")

    if not operations:
        return None

    columns = _query_columns(spec, _as_dict(methods.get("get")))
    definition = _as_dict(_definitions(spec).get(name))
    if definition:
        columns = _merge_definition_columns(columns, definition)

    return TableSchema(
        name=name,
        columns=tuple(columns),
        operations=tuple(operations),
        description=description,
    )


def _body_schema(spec: dict[str, Any], operation: dict[str, Any]) -> dict[str, Any]:
    # Swagger 2: a single ``in: body`` parameter
    parameters = operation.get("parameters")
    if isinstance(parameters, list):
        for raw in parameters:
            param = _resolve_ref(spec, raw)
            if param.get("in") == "body":
                return _resolve_ref(spec, param.get("schema"))

    # OpenAPI 3: requestBody.content.<media>.schema
    body = _resolve_ref(spec, operation.get("requestBody"))
    for media in _as_dict(body.get("content")).values():
        schema = _as_dict(media).get("schema")
        if schema:
            return _resolve_ref(spec, schema)
    return {}


def _function_parameters(spec: dict[str, Any], operation: dict[str, Any]) -> list[FunctionParameter]:
    schema = _body_schema(spec, operation)
    required = schema.get("required")
    required = set(required) if isinstance(required, list) else set()

    params: list[FunctionParameter] = []
    for param_name, raw in _as_dict(schema.get("properties")).items():
        param_schema = _as_dict(raw)
        params.append(FunctionParameter(
            name=param_name,
            type=str(param_schema.get("type") or param_schema.get("format") or "any"),
            format=param_schema.get("format"),
            required=param_name in required,
            description=str(param_schema.get("description") or ""),
        ))
    return params


def _response_schema(operation: dict[str, Any]) -> dict[str, Any]:
    responses = _as_dict(operation.get("responses"))
    ok = _as_dict(responses.get("200") or responses.get(200))
    if "schema" in ok:
        return _as_dict(ok.get("schema"))
    for media in _as_dict(ok.get("content")).values():
        schema = _as_dict(media).get("schema")
        if schema:
            return _as_dict(schema)
    return {}


def resolve_return_type(operation: dict[str, Any]) -> str:
    """Resolve a function's return type from its success response schema.

    Order: referenced type name, array of referenced or primitive type,
    declared primitive type, then ``"json"``.
    """
    schema = _response_schema(operation)

    ref_name = _ref_name(schema.get("$ref"))
    if ref_name:
        return ref_name

    if schema.get("type") == "array" and schema.get("items"):
        items = _as_dict(schema.get("items"))
        item_type = _ref_name(items.get("$ref")) or items.get("type")
        if item_type:
            return f"{item_type}[]"

    if isinstance(schema.get("type"), str) and schema["type"]:
        return schema["type"]

    return DEFAULT_RETURN_TYPE


def _parse_function(spec: dict[str, Any], name: str, methods: dict[str, Any]) -> RpcFunction | None:
    if "post" not in methods and "get" not in methods:
        return None
    operation = _as_dict(methods.get("post")) or _as_dict(methods.get("get"))

    return RpcFunction(
        name=name,
        parameters=tuple(_function_parameters(spec, operation)),
        return_type=resolve_return_type(operation),
        description=str(operation.get("description") or operation.get("summary") or ""),
    )


def parse(spec: Any) -> Catalog:
    """Parse an API description into a Catalog.

    Args:
        spec: Decoded JSON document with a path-keyed ``paths`` map.

    Returns:
        Catalog of tables and functions; empty when nothing is recognised.
    """
    spec = _as_dict(spec)
    paths = _as_dict(spec.get("paths"))

    tables: dict[str, TableSchema] = {}
    functions: dict[str, RpcFunction] = {}

    for path, raw_methods in paths.items():
        if not isinstance(path, str):
            continue
        methods = _as_dict(raw_methods)

        try:
            if path.startswith(RPC_PREFIX):
                name = path[len(RPC_PREFIX):].strip("/")
                if not name or "/" in name or name in functions:
                    continue
                function = _parse_function(spec, name, methods)
                if function:
                    functions[name] = function
                continue

            name = path.strip("/")
            if not name or "/" in name or name in tables:
                continue
            table = _parse_table(spec, name, methods)
            if table:
                tables[name] = table
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping unparseable path {path!r}: {e}")

    logger.debug(f"Parsed catalog: {len(tables)} tables, {len(functions)} functions")
    return Catalog(tables=tuple(tables.values()), functions=tuple(functions.values()))
