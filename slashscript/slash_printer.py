"""
Stringification and pretty-printing of script values and definitions.
"""
import collections.abc
import json

import pystache

from slashscript.slash_datatypes import (
    FALSY, Entry, IterableSource, InterpolatedString, FunctionDefinition, VarPart,
)
from slashscript.slash_serialize import serialize

VARS_TEMPLATE = (
    "{{#vars}}${{name}} = {{value}}\n{{/vars}}"
    "{{#lists}}@{{name}} = {{value}}\n{{/lists}}"
    "{{^any}}(no variables){{/any}}"
)
FUNCS_TEMPLATE = "{{#funcs}}{{source}}\n{{/funcs}}{{^funcs}}(no functions){{/funcs}}"
SCRIPTS_TEMPLATE = (
    "{{#scripts}}{{name}}{{#description}} - {{description}}{{/description}}\n{{/scripts}}"
    "{{^scripts}}(no scripts){{/scripts}}"
)
SCRIPT_INFO_TEMPLATE = (
    "{{name}}{{#description}}: {{description}}{{/description}}\n"
    "{{#commands}}  {{.}}\n{{/commands}}"
)


class Printer:
    """Formats values for output (`to_text`) and for listings (`pformat`)."""

    def __init__(self):
        self._handlers = self._create_handlers()
        self._renderer = pystache.Renderer(escape=lambda u: u)

    # --- Text used by interpolation and /echo ---

    def to_text(self, value) -> str:
        match value:
            case None:
                return ""
            case bool():
                return "true" if value else "false"
            case str():
                return value
            case int():
                return str(value)
            case float():
                return str(int(value)) if value.is_integer() else repr(value)
            case Entry():
                return self.to_text(value.value)
        if value is FALSY:
            return ""
        if isinstance(value, IterableSource):
            return repr(value)
        if isinstance(value, (list, tuple, collections.abc.Mapping)):
            return serialize(value, fmt='json', pretty=False)
        return str(value)

    # --- Source-like display ---

    def pformat(self, obj) -> str:
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        if obj is FALSY:
            return lambda o: "FALSY"
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        return lambda o: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self.to_text,
            float: self.to_text,
            bool: self.to_text,
            type(None): lambda o: "null",
            list: self._pformat_list,
            dict: self._pformat_dict,
            Entry: lambda o: self.pformat(o.value),
            IterableSource: repr,
            InterpolatedString: self._pformat_istring,
            FunctionDefinition: self._pformat_function,
        }

    def _pformat_str(self, obj):
        return json.dumps(obj, ensure_ascii=False)

    def _pformat_list(self, obj):
        return "[" + ", ".join(self.pformat(x) for x in obj) + "]"

    def _pformat_dict(self, obj):
        items = ", ".join(f"{json.dumps(str(k))}: {self.pformat(v)}" for k, v in obj.items())
        return "{" + items + "}"

    def _pformat_istring(self, obj):
        out = []
        for part in obj.parts:
            if isinstance(part, VarPart):
                out.append(f"${part.name}")
            else:
                out.append(part.replace('\\', '\\\\').replace('"', '\\"').replace('$', '\\$').replace('\n', '\\n'))
        return '"' + "".join(out) + '"'

    def _pformat_function(self, fn):
        params = ", ".join(f"${p}" for p in fn.params)
        if fn.kind == 'code':
            body = fn.body if '\n' not in fn.body else "\n" + fn.body + "\n"
            return f"/func {fn.language or 'code'} {fn.name}({params}) {{ {body} }}"
        return f"/func {fn.kind} {fn.name}({params}) => {self._pformat_istring(fn.body)}"

    # --- Listings ---

    def render_vars(self, variables: dict, lists: dict) -> str:
        context = {
            'vars': [{'name': k, 'value': self.pformat(v)} for k, v in sorted(variables.items())],
            'lists': [{'name': k, 'value': self.pformat(v)} for k, v in sorted(lists.items())],
            'any': bool(variables or lists),
        }
        return self._renderer.render(VARS_TEMPLATE, context).rstrip("\n")

    def render_funcs(self, functions: dict) -> str:
        context = {'funcs': [{'source': self.pformat(fn)} for _, fn in sorted(functions.items())]}
        return self._renderer.render(FUNCS_TEMPLATE, context).rstrip("\n")

    def render_scripts(self, scripts) -> str:
        context = {'scripts': [{'name': s.name, 'description': s.description} for s in scripts]}
        return self._renderer.render(SCRIPTS_TEMPLATE, context).rstrip("\n")

    def render_script_info(self, script) -> str:
        commands = [c if isinstance(c, str) else type(c).__name__ for c in script.commands]
        context = {'name': script.name, 'description': script.description, 'commands': commands}
        return self._renderer.render(SCRIPT_INFO_TEMPLATE, context).rstrip("\n")
