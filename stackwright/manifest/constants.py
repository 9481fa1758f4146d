"""Manifest constants shared by the models, parser and reference resolver."""

RESOURCE_ID_MAX_LEN = 128
KIND_MAX_LEN = 64

TEMPLATE_OPEN = "{{"
TEMPLATE_CLOSE = "}}"
TEMPLATE_PREFIX_OUTPUTS = "outputs"
TEMPLATE_PREFIX_ENV = "env"

# Rendered by ``plan`` for outputs that only exist once a dependency is applied.
UNKNOWN_OUTPUT = "(known after apply)"

DEFAULT_STACK_NAME = "default"
