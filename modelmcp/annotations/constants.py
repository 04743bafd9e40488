"""Annotation tags and value sets understood by the model walker and parser."""

MCP_ANNOTATION_PREFIX = "@mcp"

NAME = "@mcp.name"
DESCRIPTION = "@mcp.description"
RESOURCE = "@mcp.resource"
TOOL = "@mcp.tool"
PROMPTS = "@mcp.prompts"
WRAP = "@mcp.wrap"
HINT = "@mcp.hint"
OMIT = "@mcp.omit"

REQUIRES = "@requires"
RESTRICT = "@restrict"
CORE_COMPUTED = "@Core.Computed"
FOREIGN_KEY_FOR = "@odata.foreignKey4"

RESOURCE_OPTIONS = ("filter", "orderby", "select", "top", "skip")

WRAP_MODES = ("query", "get", "create", "update", "delete")
KEYED_MODES = ("get", "update", "delete")

PROMPT_ROLES = ("user", "assistant")

ASSOCIATION_TYPES = ("Association", "Composition")

INTEGER_TYPES = ("Integer", "Int16", "Int32", "UInt8")
STRING_KEY_NUMERIC_TYPES = ("Int64", "Decimal")
NUMBER_TYPES = ("Decimal", "Double")
STRING_TYPES = ("String", "LargeString", "UUID")
DATE_TYPES = ("Date",)
DATETIME_TYPES = ("DateTime", "Timestamp")

# Operation groups used by @restrict grants
OPERATIONS_BY_GRANT = {
    "READ": ("READ",),
    "CREATE": ("CREATE",),
    "UPDATE": ("UPDATE",),
    "CHANGE": ("UPDATE",),
    "DELETE": ("DELETE",),
    "WRITE": ("CREATE", "UPDATE", "DELETE"),
    "*": ("READ", "CREATE", "UPDATE", "DELETE"),
}

OPERATION_BY_MODE = {
    "query": "READ",
    "get": "READ",
    "create": "CREATE",
    "update": "UPDATE",
    "delete": "DELETE",
}

AUTHENTICATED_USER = "authenticated-user"
