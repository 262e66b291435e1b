"""Reserved identifiers shared by generated code and the runtime.

Every name has dunder-style underscores on both ends so it is never mangled
inside class bodies.
"""

RUNTIME = "__scopelift__"
RUNTIME_MODULE = "scopelift.runtime"

SCOPE = "__scopelift_scope__"
PROBE = "__scopelift_probe__"
MAKE_PREFIX = "__scopelift_make_"
LIFT = "__scopelift_lift__"
LIFTED = "__scopelift_lifted__"

TAG = "__scopelift_closure__"

RESERVED = frozenset([RUNTIME, SCOPE, PROBE, LIFT, LIFTED])


def is_reserved(name: str) -> bool:
    return name in RESERVED or name.startswith(MAKE_PREFIX)


def make_name(fn_name: str) -> str:
    """Name of the wrapper that builds the scope for `fn_name`."""
    return MAKE_PREFIX + fn_name + "__"
