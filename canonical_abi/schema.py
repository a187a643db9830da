"""Builds export descriptions from a small, WIT-flavoured schema document.

    {
      "records": {"point": {"x": "u32", "y": "u32"}},
      "functions": [
        {"name": "run",
         "params": [["machine", "u64"], ["start", "point"], ["destination", "point"]],
         "result": "run-result"}
      ]
    }

Type expressions are primitive names, `string`, `list<T>`, `tuple<T, ...>`
and the names of records declared in the same document.
"""

import json
import re
from collections.abc import Mapping

from .errors import SchemaValidationError
from .registry import ExportFunction
from .valtypes import PRIMITIVE_NAMES, FieldType, ListType, RecordType, TupleType

TOKEN = re.compile(r'\s*(?:([A-Za-z_][A-Za-z0-9_-]*)|(\S))')

def tokenize(text):
  tokens = []
  pos = 0
  text = text.rstrip()
  while pos < len(text):
    m = TOKEN.match(text, pos)
    tokens.append(m.group(1) or m.group(2))
    pos = m.end()
  return tokens

class SchemaLoader:
  def __init__(self, records = None):
    self.records = dict(records or {})
    self.resolved = {}
    self.resolving = []

  def parse(self, text):
    if not isinstance(text, str):
      raise SchemaValidationError("type expression must be a string, got {!r}".format(text))
    tokens = tokenize(text)
    t, rest = self.parse_tokens(tokens, text)
    if rest:
      raise SchemaValidationError("trailing {!r} in type {!r}".format(' '.join(rest), text))
    return t

  def parse_tokens(self, tokens, text):
    if not tokens:
      raise SchemaValidationError("incomplete type {!r}".format(text))
    name, rest = tokens[0], tokens[1:]
    match name:
      case 'list':
        rest = self.expect('<', rest, text)
        elem, rest = self.parse_tokens(rest, text)
        return ListType(elem), self.expect('>', rest, text)
      case 'tuple':
        rest = self.expect('<', rest, text)
        ts = []
        while True:
          t, rest = self.parse_tokens(rest, text)
          ts.append(t)
          if rest[:1] != [',']:
            break
          rest = rest[1:]
        return TupleType(ts), self.expect('>', rest, text)
      case _ if name in PRIMITIVE_NAMES:
        return PRIMITIVE_NAMES[name](), rest
      case _ if name in self.records:
        return self.record(name), rest
    raise SchemaValidationError("unknown type {!r} in {!r}".format(name, text))

  def expect(self, token, tokens, text):
    if tokens[:1] != [token]:
      raise SchemaValidationError("expected {!r} in type {!r}".format(token, text))
    return tokens[1:]

  def record(self, name):
    if name in self.resolved:
      return self.resolved[name]
    if name in self.resolving:
      raise SchemaValidationError("record {!r} refers to itself".format(name))
    self.resolving.append(name)
    fields = pairs(self.records[name], "record {!r}".format(name))
    if not fields:
      raise SchemaValidationError("record {!r} has no fields".format(name))
    labels = [label for label,_ in fields]
    if len(set(labels)) != len(labels):
      raise SchemaValidationError("record {!r} has duplicate field labels".format(name))
    t = RecordType([ FieldType(label, self.parse(ft)) for label,ft in fields ])
    self.resolving.pop()
    self.resolved[name] = t
    return t

def pairs(entries, what):
  if isinstance(entries, Mapping):
    entries = list(entries.items())
  if not isinstance(entries, (list, tuple)):
    raise SchemaValidationError("{} must be a mapping or a list of pairs, got {!r}".format(what, entries))
  for e in entries:
    if not isinstance(e, (list, tuple)) or len(e) != 2 or not isinstance(e[0], str):
      raise SchemaValidationError("{} entries must be [label, type] pairs, got {!r}".format(what, e))
  return [tuple(e) for e in entries]

def parse_type(text, records = None):
  return SchemaLoader(records).parse(text)

def load_functions(doc):
  if isinstance(doc, (str, bytes)):
    try:
      doc = json.loads(doc)
    except ValueError as e:
      raise SchemaValidationError("schema is not valid JSON: {}".format(e)) from e
  if not isinstance(doc, Mapping):
    raise SchemaValidationError("schema must be an object, got {}".format(type(doc).__name__))
  records = doc.get('records', {})
  if not isinstance(records, Mapping):
    raise SchemaValidationError("records must be an object, got {!r}".format(records))
  entries = doc.get('functions', [])
  if not isinstance(entries, list):
    raise SchemaValidationError("functions must be a list, got {!r}".format(entries))
  loader = SchemaLoader(records)
  functions = []
  for f in entries:
    if not isinstance(f, Mapping):
      raise SchemaValidationError("function entry must be an object, got {!r}".format(f))
    if not isinstance(f.get('name'), str):
      raise SchemaValidationError("function entry without a name: {!r}".format(f))
    params = pairs(f.get('params', []), "params of {!r}".format(f['name']))
    for key in ('realloc', 'post-return'):
      if f.get(key) is not None and not isinstance(f[key], str):
        raise SchemaValidationError("{} of {!r} must be an export name, got {!r}".format(key, f['name'], f[key]))
    result = f.get('result')
    functions.append(ExportFunction(
      f['name'],
      [ (label, loader.parse(t)) for label,t in params ],
      loader.parse(result) if result is not None else None,
      realloc = f.get('realloc'),
      post_return = f.get('post-return')))
  return functions
