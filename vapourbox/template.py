import os
import math
from collections import namedtuple

from vapourbox.errors import TemplateLoadError
from vapourbox.utils import log_debug

# ==============================================================================
# TEMPLATE SUBSTITUTION
# ==============================================================================
#
# Grammar (matched literally, no nesting of a name inside itself):
#   {{#NAME}} ... {{/NAME}}   optional block
#   {{NAME}}                  placeholder
#
# A present value strips the markers of every NAME block and replaces every
# placeholder. An absent value deletes every NAME block together with the
# newline that follows its end marker.


def start_tag(name):
    return "{{#" + name + "}}"


def end_tag(name):
    return "{{/" + name + "}}"


def placeholder(name):
    return "{{" + name + "}}"


def remove_block(name, script):
    """Deletes every {{#NAME}}...{{/NAME}} region. Stops at an unterminated block."""
    start, end = start_tag(name), end_tag(name)
    while True:
        start_pos = script.find(start)
        if start_pos < 0:
            break
        end_pos = script.find(end, start_pos)
        if end_pos < 0:
            break
        remove_end = end_pos + len(end)
        if script.startswith("\n", remove_end):
            remove_end += 1
        script = script[:start_pos] + script[remove_end:]
    return script


def keep_block(name, script):
    """Keeps the content of every NAME block, dropping only the markers."""
    return script.replace(start_tag(name), "").replace(end_tag(name), "")


def format_int(value):
    return str(int(value))


def format_double(value):
    """2.0 -> '2.0', 0.0625 -> '0.0625', 1.10 -> '1.1', 2.00001 -> '2'."""
    value = float(value)
    if value == math.floor(value):
        return f"{value:.1f}"
    return f"{value:.4f}".rstrip("0").rstrip(".")


def format_bool(value):
    return "True" if value else "False"


def format_str(value):
    return str(value)


def escape_path(value):
    return str(value).replace("\\", "\\\\")


def process_optional(name, value, script, formatter=format_str):
    if value is None:
        return remove_block(name, script)
    script = keep_block(name, script)
    return script.replace(placeholder(name), formatter(value))


def replace_required(name, value, script, formatter=format_str):
    return script.replace(placeholder(name), formatter(value))


# A tunable: emitted when set and different from its filter default.
# default=None means "emit whenever set"; tolerance applies to float comparisons.
Field = namedtuple("Field", ["name", "value", "default", "formatter", "tolerance"],
                   defaults=(None, format_str, 0.0))


def field_value(f):
    """Value to render, or None when the field must be left out."""
    if f.value is None or f.default is None:
        return f.value
    if isinstance(f.value, float) or isinstance(f.default, float):
        if abs(float(f.value) - float(f.default)) <= f.tolerance:
            return None
        return f.value
    if f.value == f.default:
        return None
    return f.value


def substitute_fields(script, fields):
    for f in fields:
        script = process_optional(f.name, field_value(f), script, f.formatter)
    return script


def select_method(script, chosen, alternatives):
    """Keeps the chosen block and removes every other alternative."""
    for name in alternatives:
        if name != chosen:
            script = remove_block(name, script)
    if chosen is not None:
        script = keep_block(chosen, script)
    return script


def toggle_block(name, enabled, script):
    return keep_block(name, script) if enabled else remove_block(name, script)


def load_template(filename, search_dirs, fallback=None):
    """
    Returns the text of the first existing search_dirs/filename.
    Falls back to the built-in text, or raises TemplateLoadError if there is none.
    """
    searched = []
    for directory in search_dirs:
        if not directory:
            continue
        path = os.path.join(directory, filename)
        searched.append(path)
        if os.path.isfile(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = f.read()
            except OSError as e:
                log_debug(f"[TEMPLATE] Could not read {path}: {e}")
                continue
            log_debug(f"[TEMPLATE] Loaded template from: {path}")
            return content

    if fallback is not None:
        log_debug(f"[TEMPLATE] Using embedded fallback for {filename}")
        return fallback

    raise TemplateLoadError(f"Template {filename} not found", f"searched: {', '.join(searched) or 'nothing'}")
