#!/usr/bin/env python3
"""
diffschema - MySQL schema diff and migration script generator

Compares the table definitions of two MySQL schemas, read either from SQL
dump files or from live databases, and writes the ALTER/CREATE/DROP TABLE
statements that turn the target schema into the source schema:
- Parse CREATE TABLE statements into a structured table model
- Diff two schemas table by table, column by column and key by key
- Render the differences as one reviewable, deterministic SQL script
- Review the migration for data-loss hazards before it is applied

Only InnoDB tables are supported. Views, stored procedures and triggers are
not compared, and nothing is ever executed against a server.

diffschema is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

diffschema is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with diffschema.  If not, see www.gnu.org/licenses
"""

import argparse
import re
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import mysql.connector
from mysql.connector import Error as MySQLError

__version__ = "1.1.1"


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

SCRIPT_HEADER = "SET NAMES utf8;"
SUPPORTED_ENGINE = "InnoDB"
DEFAULT_PORT = 3306
DEFAULT_WORKERS = 8

# Type spellings that MySQL treats as the same type.
TYPE_ALIASES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "integer": ("int", ()),
    "bool": ("tinyint", ("1",)),
    "boolean": ("tinyint", ("1",)),
    "dec": ("decimal", ()),
    "numeric": ("decimal", ()),
    "fixed": ("decimal", ()),
}

FOREIGN_KEY_ACTIONS = (
    ("RESTRICT",),
    ("CASCADE",),
    ("SET", "NULL"),
    ("SET", "DEFAULT"),
    ("NO", "ACTION"),
)

# Table options kept verbatim as KEY=value pairs.
TABLE_OPTION_KEYS = (
    ("ROW_FORMAT",),
    ("KEY_BLOCK_SIZE",),
    ("STATS_AUTO_RECALC",),
    ("STATS_PERSISTENT",),
    ("STATS_SAMPLE_PAGES",),
    ("MIN_ROWS",),
    ("MAX_ROWS",),
    ("AVG_ROW_LENGTH",),
    ("PACK_KEYS",),
    ("CHECKSUM",),
    ("DELAY_KEY_WRITE",),
    ("INSERT_METHOD",),
    ("TABLESPACE",),
    ("STORAGE",),
    ("ENCRYPTION",),
    ("COMPRESSION",),
    ("CONNECTION",),
    ("UNION",),
    ("DATA", "DIRECTORY"),
    ("INDEX", "DIRECTORY"),
)


class WarningLevel(Enum):
    """Enum for categorizing review warning severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class ConstraintKind(Enum):
    """Kinds of keys a table can declare, valued by their DDL keyword."""
    PRIMARY_KEY = "PRIMARY KEY"
    UNIQUE = "UNIQUE KEY"
    INDEX = "KEY"
    FULLTEXT = "FULLTEXT KEY"
    FOREIGN_KEY = "FOREIGN KEY"


class AlterStage(Enum):
    """
    Clause order inside one ALTER TABLE statement.

    Drops run before the column changes they could conflict with, and
    additions run after the columns they depend on exist.
    """
    DROP_FOREIGN_KEYS = 1
    DROP_INDEXES = 2
    DROP_PRIMARY_KEY = 3
    DROP_COLUMNS = 4
    ADD_COLUMNS = 5
    MODIFY_COLUMNS = 6
    ADD_PRIMARY_KEY = 7
    ADD_INDEXES = 8
    ADD_FOREIGN_KEYS = 9
    TABLE_OPTIONS = 10


# ============================================================================
# ERRORS
# ============================================================================

class SchemaDiffError(Exception):
    """Base class for every failure that aborts a schema comparison."""


class ParseError(SchemaDiffError):
    """
    A CREATE TABLE statement could not be turned into a table model.

    Attributes:
        reason: What went wrong
        table: Name of the table being parsed, when known
        fragment: The offending piece of DDL, when known
    """

    def __init__(self, reason: str, table: Optional[str] = None, fragment: Optional[str] = None):
        self.reason = reason
        self.table = table
        self.fragment = fragment
        super().__init__(self._format())

    def _format(self) -> str:
        message = self.reason
        if self.table:
            message = f"table `{self.table}`: {message}"
        if self.fragment:
            message = f"{message}: {shorten_fragment(self.fragment)}"
        return message


class UnsupportedFeatureError(ParseError):
    """The DDL is well formed but uses something outside the supported subset."""


class SchemaConnectionError(SchemaDiffError):
    """Malformed connection string or a database driver failure."""


class SchemaIOError(SchemaDiffError):
    """Reading a dump file or writing the migration script failed."""


def shorten_fragment(fragment: str, limit: int = 120) -> str:
    """Collapse whitespace and cut a DDL fragment down to an error-message length."""
    text = " ".join(fragment.split())
    if len(text) > limit:
        return text[:limit - 3] + "..."
    return text


# ============================================================================
# DATA MODELS
# ============================================================================

def quote_identifier(name: str) -> str:
    """Backtick-quote an identifier, doubling embedded backticks."""
    return "`" + name.replace("`", "``") + "`"


def unquote_identifier(text: str) -> str:
    """Strip backtick quoting from an identifier, undoubling embedded backticks."""
    if len(text) >= 2 and text.startswith("`") and text.endswith("`"):
        return text[1:-1].replace("``", "`")
    return text


_KEY_PART_RE = re.compile(r"(.*?)(\(\d+\))?( DESC)?", re.DOTALL)


def key_part_column(part: str) -> str:
    """Column name of a key part such as ``name(10) DESC``."""
    return _KEY_PART_RE.fullmatch(part).group(1)


def render_key_parts(parts: Sequence[str]) -> str:
    """
    Render key parts as a quoted column list.

    Args:
        parts: Key parts such as 'name', 'title(20)' or 'created DESC'

    Returns:
        The list in parentheses, e.g. '(`name`,`title`(20))'
    """
    rendered = []
    for part in parts:
        match = _KEY_PART_RE.fullmatch(part)
        rendered.append(quote_identifier(match.group(1)) + (match.group(2) or "") + (match.group(3) or ""))
    return "(" + ",".join(rendered) + ")"


@dataclass(frozen=True)
class ColumnType:
    """
    A column's data type.

    The type name is stored lowercased so that ``INT`` and ``int`` compare
    equal; parameters are kept as their literal text (``"10"``, ``"'a'"``)
    and compared exactly.

    Attributes:
        name: Semantic type name (e.g. 'varchar', 'bigint', 'decimal')
        params: Length, precision/scale or enum/set values
        unsigned: Whether the UNSIGNED attribute is set
        zerofill: Whether the ZEROFILL attribute is set
    """
    name: str
    params: Tuple[str, ...] = ()
    unsigned: bool = False
    zerofill: bool = False

    def __post_init__(self):
        object.__setattr__(self, "name", self.name.lower())
        object.__setattr__(self, "params", tuple(self.params))

    def to_sql(self) -> str:
        """Render the type as written in a column definition, e.g. 'int(11) unsigned'."""
        sql = self.name
        if self.params:
            sql += "(" + ",".join(self.params) + ")"
        if self.unsigned:
            sql += " unsigned"
        if self.zerofill:
            sql += " zerofill"
        return sql


@dataclass(frozen=True)
class Column:
    """
    Represents a table column with all its properties.

    Attributes:
        name: Column name, unique within its table
        column_type: Parsed data type
        nullable: Whether NULL values are allowed
        default: Raw default literal; None means no DEFAULT clause, while
            the string 'NULL' is an explicit DEFAULT NULL
        auto_increment: Whether the column is AUTO_INCREMENT
        position: 1-based declaration order (informational only)
        comment: Column comment, as written between the quotes
        charset: Column character set
        collation: Column collation
        on_update: ON UPDATE expression (e.g. 'CURRENT_TIMESTAMP')
    """
    name: str
    column_type: ColumnType
    nullable: bool = True
    default: Optional[str] = None
    auto_increment: bool = False
    position: int = 0
    comment: Optional[str] = None
    charset: Optional[str] = None
    collation: Optional[str] = None
    on_update: Optional[str] = None

    def same_definition(self, other: "Column") -> bool:
        """Compare everything except the ordinal position."""
        return replace(self, position=0) == replace(other, position=0)

    def to_sql(self) -> str:
        """Render the column definition used by CREATE TABLE and ADD/MODIFY COLUMN."""
        parts = [quote_identifier(self.name), self.column_type.to_sql()]
        if self.charset:
            parts.append(f"CHARACTER SET {self.charset}")
        if self.collation:
            parts.append(f"COLLATE {self.collation}")
        parts.append("NULL" if self.nullable else "NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.on_update:
            parts.append(f"ON UPDATE {self.on_update}")
        if self.auto_increment:
            parts.append("AUTO_INCREMENT")
        if self.comment is not None:
            parts.append(f"COMMENT '{self.comment}'")
        return " ".join(parts)


@dataclass(frozen=True)
class Constraint:
    """
    A primary key, index or foreign key.

    Attributes:
        kind: Constraint kind
        name: Constraint name; None only for the primary key
        columns: Key parts, each a column name optionally followed by a
            prefix length and direction (e.g. 'title(20) DESC')
        referenced_table: Referenced table (foreign keys only)
        referenced_columns: Referenced columns (foreign keys only)
        on_delete: ON DELETE action, None when not declared
        on_update: ON UPDATE action, None when not declared
        index_type: USING clause (BTREE, HASH)
        parser: FULLTEXT parser plugin name
        comment: Index comment
    """
    kind: ConstraintKind
    name: Optional[str]
    columns: Tuple[str, ...]
    referenced_table: Optional[str] = None
    referenced_columns: Tuple[str, ...] = ()
    on_delete: Optional[str] = None
    on_update: Optional[str] = None
    index_type: Optional[str] = None
    parser: Optional[str] = None
    comment: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "referenced_columns", tuple(self.referenced_columns))

    @property
    def identity(self) -> Tuple[str, str]:
        """
        Key used to match constraints between two versions of a table.

        Foreign keys and indexes are separate namespaces in MySQL, so an
        index and a foreign key may share a name.
        """
        if self.kind is ConstraintKind.PRIMARY_KEY:
            return ("primary", "")
        if self.kind is ConstraintKind.FOREIGN_KEY:
            return ("foreign", self.name or "")
        return ("index", self.name or "")

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(key_part_column(part) for part in self.columns)

    def to_sql(self) -> str:
        """Render the key definition used by CREATE TABLE and ALTER TABLE ... ADD."""
        if self.kind is ConstraintKind.FOREIGN_KEY:
            sql = (
                f"CONSTRAINT {quote_identifier(self.name)} FOREIGN KEY {render_key_parts(self.columns)} "
                f"REFERENCES {quote_identifier(self.referenced_table)} {render_key_parts(self.referenced_columns)}"
            )
            if self.on_delete:
                sql += f" ON DELETE {self.on_delete}"
            if self.on_update:
                sql += f" ON UPDATE {self.on_update}"
            return sql

        if self.kind is ConstraintKind.PRIMARY_KEY:
            sql = f"PRIMARY KEY {render_key_parts(self.columns)}"
        else:
            sql = f"{self.kind.value} {quote_identifier(self.name)} {render_key_parts(self.columns)}"
        if self.index_type:
            sql += f" USING {self.index_type}"
        if self.parser:
            sql += f" WITH PARSER {self.parser}"
        if self.comment is not None:
            sql += f" COMMENT '{self.comment}'"
        return sql


@dataclass(frozen=True)
class TableOptions:
    """
    Table-level options from the clause after the column list.

    Attributes:
        engine: Storage engine (always InnoDB once parsed)
        charset: Default character set
        collation: Default collation
        comment: Table comment, as written between the quotes
        extra: Any other KEY=value options (e.g. ROW_FORMAT), sorted by key
    """
    engine: str = SUPPORTED_ENGINE
    charset: Optional[str] = None
    collation: Optional[str] = None
    comment: Optional[str] = None
    extra: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "extra", tuple(sorted(self.extra)))

    def assignments(self) -> List[str]:
        """All options as KEY=value strings, in CREATE TABLE order."""
        parts = [f"ENGINE={self.engine}"]
        if self.charset:
            parts.append(f"DEFAULT CHARSET={self.charset}")
        if self.collation:
            parts.append(f"COLLATE={self.collation}")
        parts.extend(f"{key}={value}" for key, value in self.extra)
        if self.comment is not None:
            parts.append(f"COMMENT='{self.comment}'")
        return parts

    def changes_from(self, previous: "TableOptions") -> List[str]:
        """
        Option assignments that turn ``previous`` into these options.

        Only options these options actually declare can be set, so a
        charset, collation or extra option that is merely absent here
        produces no assignment. A removed comment is cleared with
        ``COMMENT=''``.
        """
        parts = []
        if self.engine != previous.engine:
            parts.append(f"ENGINE={self.engine}")
        if self.charset and self.charset != previous.charset:
            parts.append(f"DEFAULT CHARSET={self.charset}")
            if self.collation:
                parts.append(f"COLLATE={self.collation}")
        elif self.collation and self.collation != previous.collation:
            parts.append(f"COLLATE={self.collation}")
        previous_extra = dict(previous.extra)
        for key, value in self.extra:
            if previous_extra.get(key) != value:
                parts.append(f"{key}={value}")
        if self.comment != previous.comment:
            parts.append(f"COMMENT='{self.comment or ''}'")
        return parts

    def to_sql(self) -> str:
        """Render the options clause that follows a CREATE TABLE column list."""
        return " ".join(self.assignments())


@dataclass(frozen=True)
class Table:
    """
    Represents a database table with all its components.

    Attributes:
        name: Table name
        columns: Columns in declaration order
        constraints: Primary key, indexes and foreign keys in declaration order
        options: Table options
    """
    name: str
    columns: Tuple[Column, ...] = ()
    constraints: Tuple[Constraint, ...] = ()
    options: TableOptions = field(default_factory=TableOptions)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "constraints", tuple(self.constraints))

        names = [column.name for column in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"Table '{self.name}' has duplicate column names")
        identities = [constraint.identity for constraint in self.constraints]
        if len(identities) != len(set(identities)):
            raise ValueError(f"Table '{self.name}' has duplicate constraint names")

    def get_column(self, name: str) -> Optional[Column]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def primary_key(self) -> Optional[Constraint]:
        for constraint in self.constraints:
            if constraint.kind is ConstraintKind.PRIMARY_KEY:
                return constraint
        return None

    def constraint_map(self) -> Dict[Tuple[str, str], Constraint]:
        return {constraint.identity: constraint for constraint in self.constraints}


@dataclass(frozen=True)
class Schema:
    """
    One complete, read-only snapshot of a set of tables.

    Attributes:
        tables: Mapping of table_name -> Table
        database_name: Name of the database or dump the snapshot came from
    """
    tables: Mapping[str, Table] = field(default_factory=dict)
    database_name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "tables", MappingProxyType(dict(self.tables)))

    @classmethod
    def from_tables(cls, tables: Sequence[Table], database_name: str = "") -> "Schema":
        return cls({table.name: table for table in tables}, database_name)


class ColumnChange(NamedTuple):
    before: Column
    after: Column


class ConstraintChange(NamedTuple):
    before: Constraint
    after: Constraint


class OptionsChange(NamedTuple):
    before: TableOptions
    after: TableOptions


@dataclass(frozen=True)
class TableDiff:
    """
    Differences between the two versions of one table.

    ``before`` values come from the target (current state) and ``after``
    values from the source (desired state).
    """
    name: str
    added_columns: Tuple[Column, ...] = ()
    removed_columns: Tuple[Column, ...] = ()
    modified_columns: Tuple[ColumnChange, ...] = ()
    added_constraints: Tuple[Constraint, ...] = ()
    removed_constraints: Tuple[Constraint, ...] = ()
    modified_constraints: Tuple[ConstraintChange, ...] = ()
    options: Optional[OptionsChange] = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.added_columns or self.removed_columns or self.modified_columns or
            self.added_constraints or self.removed_constraints or self.modified_constraints or
            self.options
        )


@dataclass(frozen=True)
class SchemaDiff:
    """
    Everything needed to turn the target schema into the source schema.

    Attributes:
        created: Tables only in the source, to CREATE
        dropped: Tables only in the target, to DROP
        altered: Non-empty diffs of tables present in both, to ALTER
    """
    created: Tuple[Table, ...] = ()
    dropped: Tuple[Table, ...] = ()
    altered: Tuple[TableDiff, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.created or self.dropped or self.altered)


@dataclass
class MigrationWarning:
    """
    A hazard found while reviewing a migration.

    Attributes:
        level: Severity level
        message: Description of the hazard
        context: Additional context (table name, column name, etc.)
    """
    level: WarningLevel
    message: str
    context: str = ""


# ============================================================================
# DDL PARSER
# ============================================================================

_TOKEN_RE = re.compile(r"""
    (?P<space>\s+|--(?=\s)[^\n]*|\#[^\n]*|/\*!\d*|\*/|/\*.*?\*/)
  | (?P<ident>`(?:[^`]|``)*`)
  | (?P<string>(?:_[A-Za-z0-9]+|[bBxXnN])?'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*")
  | (?P<number>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)
  | (?P<word>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<punct>[(),=;.])
  | (?P<other>.)
""", re.VERBOSE | re.DOTALL)

_CREATE_TABLE_RE = re.compile(
    r"\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?"
    r"((?:`(?:[^`]|``)+`|[\w$]+)(?:\s*\.\s*(?:`(?:[^`]|``)+`|[\w$]+))?)\s*\(",
    re.IGNORECASE,
)

_QUALIFIED_NAME_RE = re.compile(r"`(?:[^`]|``)+`|[\w$]+")


class Token(NamedTuple):
    kind: str
    text: str
    start: int
    end: int


def tokenize(sql: str) -> List[Token]:
    """
    Split SQL text into tokens.

    Whitespace and comments are dropped. The markers of MySQL versioned
    comments (``/*!50100 ... */``) are dropped too, so their content is
    tokenized like ordinary SQL.
    """
    tokens = []
    for match in _TOKEN_RE.finditer(sql):
        if match.lastgroup != "space":
            tokens.append(Token(match.lastgroup, match.group(), match.start(), match.end()))
    return tokens


def _is_punct(token: Optional[Token], char: str) -> bool:
    return token is not None and token.kind == "punct" and token.text == char


def split_top_level(text: str) -> List[str]:
    """
    Split text on commas that are not nested inside parentheses.

    Commas inside quoted strings or identifiers never split, so enum
    values, decimal precisions and key column lists stay whole.
    """
    items = []
    depth = 0
    start = 0
    for token in tokenize(text):
        if _is_punct(token, "("):
            depth += 1
        elif _is_punct(token, ")"):
            depth -= 1
        elif _is_punct(token, ",") and depth == 0:
            items.append(text[start:token.start].strip())
            start = token.end
    tail = text[start:].strip()
    if tail or items:
        items.append(tail)
    return items


class _TokenStream:
    """Cursor over the tokens of one DDL fragment."""

    def __init__(self, text: str, table: Optional[str] = None):
        self.text = text
        self.table = table
        self.tokens = tokenize(text)
        self.pos = 0

    def error(self, reason: str, cls=ParseError) -> ParseError:
        return cls(reason, table=self.table, fragment=self.text)

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def peek_word(self, offset: int = 0) -> Optional[str]:
        token = self.peek(offset)
        if token is not None and token.kind == "word":
            return token.text.upper()
        return None

    def peek_punct(self, char: str) -> bool:
        return _is_punct(self.peek(), char)

    def next(self) -> Optional[Token]:
        token = self.peek()
        if token is not None:
            self.pos += 1
        return token

    def accept(self, *words: str) -> bool:
        """Consume the given keyword sequence if it comes next."""
        for offset, word in enumerate(words):
            if self.peek_word(offset) != word:
                return False
        self.pos += len(words)
        return True

    def accept_punct(self, char: str) -> bool:
        if self.peek_punct(char):
            self.pos += 1
            return True
        return False

    def read_name(self) -> Optional[str]:
        token = self.peek()
        if token is None or token.kind not in ("ident", "word"):
            return None
        self.pos += 1
        return unquote_identifier(token.text)

    def read_qualified_name(self) -> Optional[str]:
        """Read ``name`` or ``schema.name``, returning the last part."""
        name = self.read_name()
        while name is not None and self.accept_punct("."):
            name = self.read_name()
        return name

    def read_group(self) -> str:
        """Consume a parenthesised group and return its raw text."""
        opening = self.next()
        if not _is_punct(opening, "("):
            raise self.error("expected '('")
        depth = 1
        while depth:
            token = self.next()
            if token is None:
                raise self.error("unbalanced parentheses")
            if _is_punct(token, "("):
                depth += 1
            elif _is_punct(token, ")"):
                depth -= 1
        return self.text[opening.start:self.tokens[self.pos - 1].end]

    def read_string(self) -> str:
        """Consume a quoted string and return the text between its quotes."""
        token = self.next()
        if token is None or token.kind != "string":
            raise self.error("expected quoted string")
        text = token.text
        quote = text[-1]
        inner = text[text.index(quote) + 1:-1]
        if quote == '"':
            inner = inner.replace('""', '"').replace("'", "''")
        return inner

    def read_value(self) -> str:
        """Consume a default/on-update value and return its literal text."""
        token = self.peek()
        if token is None:
            raise self.error("missing value")
        if _is_punct(token, "("):
            return self.read_group()
        self.pos += 1
        if token.kind == "word":
            value = token.text.upper()
            if self.peek_punct("("):
                value += self.read_group()
            return value
        if token.kind in ("string", "number"):
            return token.text
        raise self.error(f"unexpected value {token.text!r}")

    def read_option_value(self) -> str:
        """Consume ``[=] value``; a parenthesised list (UNION) is kept as written."""
        self.accept_punct("=")
        if self.peek_punct("("):
            return self.read_group()
        token = self.next()
        if token is None:
            raise self.error("missing option value")
        if token.kind == "word":
            return token.text.upper()
        if token.kind in ("string", "number", "ident"):
            return token.text
        raise self.error(f"unexpected option value {token.text!r}")


class ColumnItem(NamedTuple):
    text: str


class ConstraintItem(NamedTuple):
    text: str


class RejectedItem(NamedTuple):
    text: str
    reason: str
    unsupported: bool = False


_CONSTRAINT_KEYWORDS = {"PRIMARY", "UNIQUE", "KEY", "INDEX", "FULLTEXT", "CONSTRAINT", "FOREIGN"}
_UNSUPPORTED_KEYWORDS = {
    "CHECK": "CHECK constraints are not supported",
    "SPATIAL": "SPATIAL indexes are not supported",
    "PERIOD": "system-versioned tables are not supported",
}


def classify_item(item: str):
    """
    Decide what one top-level item of a CREATE TABLE body declares.

    Returns a ColumnItem, ConstraintItem or RejectedItem.
    """
    tokens = tokenize(item)
    if not tokens:
        return RejectedItem(item, "empty definition")
    first = tokens[0]
    if first.kind == "ident":
        return ColumnItem(item)
    if first.kind == "word":
        keyword = first.text.upper()
        if keyword in _CONSTRAINT_KEYWORDS:
            # CONSTRAINT `name` CHECK (...) is still a CHECK constraint.
            if keyword == "CONSTRAINT" and any(t.kind == "word" and t.text.upper() == "CHECK" for t in tokens[1:3]):
                return RejectedItem(item, _UNSUPPORTED_KEYWORDS["CHECK"], unsupported=True)
            return ConstraintItem(item)
        if keyword in _UNSUPPORTED_KEYWORDS:
            return RejectedItem(item, _UNSUPPORTED_KEYWORDS[keyword], unsupported=True)
        if len(tokens) > 1 and tokens[1].kind == "word":
            return ColumnItem(item)
    return RejectedItem(item, "unrecognized definition")


class DDLParser:
    """
    Parses a single CREATE TABLE statement into a Table.

    The parser is pattern based rather than a full SQL grammar: it finds
    the table name, splits the body into top-level items, classifies each
    item as a column or a constraint and parses it with a small set of
    keyword matchers, then reads the table options after the body. Any
    part it cannot match is a ParseError, never a partial table.
    """

    def __init__(self, sql: str):
        """
        Args:
            sql: Text of one CREATE TABLE statement, optionally ending in ';'
        """
        self.sql = sql.strip().rstrip(";").rstrip()
        self.table_name: Optional[str] = None

    def parse(self) -> Table:
        match = _CREATE_TABLE_RE.match(self.sql)
        if not match:
            raise ParseError("not a CREATE TABLE statement with a column list", fragment=self.sql)
        self.table_name = unquote_identifier(_QUALIFIED_NAME_RE.findall(match.group(1))[-1])

        open_index = match.end() - 1
        close_index = self._find_closing_paren(open_index)
        body = self.sql[open_index + 1:close_index]
        tail = self.sql[close_index + 1:]

        columns: List[Column] = []
        constraints: List[Constraint] = []
        for item in split_top_level(body):
            classified = classify_item(item)
            if isinstance(classified, ColumnItem):
                column, inline_constraints = self._parse_column(classified.text, len(columns) + 1)
                if any(existing.name == column.name for existing in columns):
                    raise ParseError(f"duplicate column `{column.name}`", self.table_name, item)
                columns.append(column)
                constraints.extend(inline_constraints)
            elif isinstance(classified, ConstraintItem):
                constraints.append(self._parse_constraint(classified.text))
            else:
                cls = UnsupportedFeatureError if classified.unsupported else ParseError
                raise cls(classified.reason, self.table_name, classified.text or body)

        if not columns:
            raise ParseError("table defines no columns", self.table_name, body)

        constraints = self._name_constraints(constraints)
        columns = self._apply_constraints(columns, constraints)
        options = self._parse_options(tail)
        return Table(self.table_name, tuple(columns), tuple(constraints), options)

    def _find_closing_paren(self, open_index: int) -> int:
        depth = 0
        for token in tokenize(self.sql[open_index:]):
            if _is_punct(token, "("):
                depth += 1
            elif _is_punct(token, ")"):
                depth -= 1
                if depth == 0:
                    return open_index + token.start
        raise ParseError("unbalanced parentheses in table body", self.table_name, self.sql)

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def _parse_column(self, item: str, position: int) -> Tuple[Column, List[Constraint]]:
        stream = _TokenStream(item, self.table_name)
        name = stream.read_name()
        type_name = stream.peek_word()
        if name is None or type_name is None:
            raise stream.error("expected column name and type")
        stream.next()
        type_name = type_name.lower()
        if type_name == "double":
            stream.accept("PRECISION")

        params: Tuple[str, ...] = ()
        if stream.peek_punct("("):
            params = tuple(split_top_level(stream.read_group()[1:-1]))
            if not all(params):
                raise stream.error("empty type parameter")
        if type_name in TYPE_ALIASES:
            type_name, alias_params = TYPE_ALIASES[type_name]
            params = params or alias_params

        attrs: Dict[str, Any] = {"nullable": True}
        unsigned = zerofill = False
        inline: List[Constraint] = []

        while not stream.at_end():
            if stream.accept("UNSIGNED"):
                unsigned = True
            elif stream.accept("SIGNED"):
                unsigned = False
            elif stream.accept("ZEROFILL"):
                zerofill = True
            elif stream.accept("NOT", "NULL"):
                attrs["nullable"] = False
            elif stream.accept("NULL"):
                attrs["nullable"] = True
            elif stream.accept("DEFAULT"):
                attrs["default"] = stream.read_value()
            elif stream.accept("AUTO_INCREMENT"):
                attrs["auto_increment"] = True
            elif stream.accept("COMMENT"):
                attrs["comment"] = stream.read_string()
            elif stream.accept("CHARACTER", "SET") or stream.accept("CHARSET"):
                attrs["charset"] = self._read_word(stream).lower()
            elif stream.accept("COLLATE"):
                attrs["collation"] = self._read_word(stream).lower()
            elif stream.accept("ON", "UPDATE"):
                attrs["on_update"] = stream.read_value()
            elif stream.accept("PRIMARY", "KEY") or stream.accept("KEY"):
                inline.append(Constraint(ConstraintKind.PRIMARY_KEY, None, (name,)))
            elif stream.accept("UNIQUE"):
                stream.accept("KEY")
                inline.append(Constraint(ConstraintKind.UNIQUE, None, (name,)))
            elif stream.peek_word() in ("GENERATED", "AS"):
                raise stream.error("generated columns are not supported", UnsupportedFeatureError)
            else:
                raise stream.error(f"unrecognized column attribute {stream.peek().text!r}")

        column_type = ColumnType(type_name, params, unsigned, zerofill)
        return Column(name=name, column_type=column_type, position=position, **attrs), inline

    @staticmethod
    def _read_word(stream: _TokenStream) -> str:
        name = stream.read_name()
        if name is None:
            raise stream.error("expected a name")
        return name

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def _parse_constraint(self, item: str) -> Constraint:
        stream = _TokenStream(item, self.table_name)
        name = None
        prefixed = stream.accept("CONSTRAINT")
        if prefixed and stream.peek_word() not in ("PRIMARY", "UNIQUE", "FOREIGN"):
            name = stream.read_name()

        if stream.accept("PRIMARY", "KEY"):
            kind = ConstraintKind.PRIMARY_KEY
            name = None
        elif stream.accept("UNIQUE"):
            kind = ConstraintKind.UNIQUE
            if not stream.accept("KEY"):
                stream.accept("INDEX")
            name = self._read_index_name(stream) or name
        elif stream.accept("FOREIGN", "KEY"):
            kind = ConstraintKind.FOREIGN_KEY
            # Only the CONSTRAINT symbol names a foreign key; the index name
            # names the implicit backing index, which the server lists as a KEY
            self._read_index_name(stream)
        elif not prefixed and (stream.accept("KEY") or stream.accept("INDEX")):
            kind = ConstraintKind.INDEX
            name = self._read_index_name(stream)
        elif not prefixed and stream.accept("FULLTEXT"):
            kind = ConstraintKind.FULLTEXT
            if not stream.accept("KEY"):
                stream.accept("INDEX")
            name = self._read_index_name(stream)
        else:
            raise stream.error("unrecognized constraint definition")

        attrs: Dict[str, Any] = {}
        if stream.accept("USING"):
            attrs["index_type"] = self._read_word(stream).upper()
        columns = self._read_key_parts(stream)

        if kind is ConstraintKind.FOREIGN_KEY:
            if not stream.accept("REFERENCES"):
                raise stream.error("expected REFERENCES")
            attrs["referenced_table"] = stream.read_qualified_name()
            if attrs["referenced_table"] is None:
                raise stream.error("expected referenced table")
            attrs["referenced_columns"] = self._read_key_parts(stream)
            if stream.accept("MATCH"):
                self._read_word(stream)
            while not stream.at_end():
                if stream.accept("ON", "DELETE"):
                    attrs["on_delete"] = self._read_action(stream)
                elif stream.accept("ON", "UPDATE"):
                    attrs["on_update"] = self._read_action(stream)
                else:
                    raise stream.error(f"unexpected {stream.peek().text!r} in foreign key")
        else:
            while not stream.at_end():
                if stream.accept("USING"):
                    attrs["index_type"] = self._read_word(stream).upper()
                elif stream.accept("COMMENT"):
                    attrs["comment"] = stream.read_string()
                elif stream.accept("WITH", "PARSER"):
                    attrs["parser"] = self._read_word(stream)
                elif stream.accept("KEY_BLOCK_SIZE"):
                    stream.read_option_value()
                else:
                    raise stream.error(f"unexpected {stream.peek().text!r} in key definition")

        return Constraint(kind, name, columns, **attrs)

    @staticmethod
    def _read_index_name(stream: _TokenStream) -> Optional[str]:
        if stream.peek_word() == "USING" or stream.peek_punct("("):
            return None
        return stream.read_name()

    def _read_key_parts(self, stream: _TokenStream) -> Tuple[str, ...]:
        if not stream.peek_punct("("):
            raise stream.error("expected column list")
        parts = []
        for raw in split_top_level(stream.read_group()[1:-1]):
            part_stream = _TokenStream(raw, self.table_name)
            name = part_stream.read_name()
            if name is None:
                raise part_stream.error("functional key parts are not supported", UnsupportedFeatureError)
            part = name
            if part_stream.peek_punct("("):
                part += "".join(part_stream.read_group().split())
            if part_stream.accept("DESC"):
                part += " DESC"
            else:
                part_stream.accept("ASC")
            if not part_stream.at_end():
                raise part_stream.error("unexpected token in key column")
            parts.append(part)
        if not parts:
            raise stream.error("empty column list")
        return tuple(parts)

    @staticmethod
    def _read_action(stream: _TokenStream) -> str:
        for words in FOREIGN_KEY_ACTIONS:
            if stream.accept(*words):
                return " ".join(words)
        raise stream.error("expected a referential action")

    def _name_constraints(self, constraints: List[Constraint]) -> List[Constraint]:
        """Give unnamed keys the names MySQL would assign and check for clashes."""
        primary_keys = [c for c in constraints if c.kind is ConstraintKind.PRIMARY_KEY]
        if len(primary_keys) > 1:
            raise ParseError("multiple primary keys defined", self.table_name)

        used = set()
        for constraint in constraints:
            if constraint.name is None:
                continue
            if constraint.identity in used:
                raise ParseError(f"duplicate key name `{constraint.name}`", self.table_name)
            used.add(constraint.identity)

        named = []
        foreign_count = 0
        for constraint in constraints:
            if constraint.name is None and constraint.kind is ConstraintKind.FOREIGN_KEY:
                while True:
                    foreign_count += 1
                    candidate = f"{self.table_name}_ibfk_{foreign_count}"
                    if ("foreign", candidate) not in used:
                        break
                constraint = replace(constraint, name=candidate)
                used.add(constraint.identity)
            elif constraint.name is None and constraint.kind is not ConstraintKind.PRIMARY_KEY:
                base = constraint.column_names[0]
                candidate, suffix = base, 1
                while ("index", candidate) in used or candidate.upper() == "PRIMARY":
                    suffix += 1
                    candidate = f"{base}_{suffix}"
                constraint = replace(constraint, name=candidate)
                used.add(constraint.identity)
            named.append(constraint)
        return named

    def _apply_constraints(self, columns: List[Column], constraints: List[Constraint]) -> List[Column]:
        """Check key columns exist; primary key columns are implicitly NOT NULL."""
        names = {column.name for column in columns}
        primary = set()
        for constraint in constraints:
            for column_name in constraint.column_names:
                if column_name not in names:
                    raise ParseError(
                        f"key column `{column_name}` doesn't exist in table",
                        self.table_name, constraint.to_sql(),
                    )
            if constraint.kind is ConstraintKind.PRIMARY_KEY:
                primary.update(constraint.column_names)
        return [replace(c, nullable=False) if c.name in primary else c for c in columns]

    # ------------------------------------------------------------------
    # Table options
    # ------------------------------------------------------------------

    def _parse_options(self, tail: str) -> TableOptions:
        stream = _TokenStream(tail, self.table_name)
        engine = None
        attrs: Dict[str, Any] = {}
        extra: Dict[str, str] = {}

        while not stream.at_end():
            if stream.accept_punct(","):
                continue
            if stream.accept("DEFAULT") and stream.at_end():
                raise stream.error("dangling DEFAULT in table options")
            # TYPE is the pre-5.5 spelling of ENGINE
            if stream.accept("ENGINE") or stream.accept("TYPE"):
                stream.accept_punct("=")
                engine = self._read_word(stream)
            elif stream.accept("CHARACTER", "SET") or stream.accept("CHARSET"):
                stream.accept_punct("=")
                attrs["charset"] = self._read_word(stream).lower()
            elif stream.accept("COLLATE"):
                stream.accept_punct("=")
                attrs["collation"] = self._read_word(stream).lower()
            elif stream.accept("COMMENT"):
                stream.accept_punct("=")
                attrs["comment"] = stream.read_string()
            elif stream.accept("AUTO_INCREMENT"):
                # The counter value is data, not structure.
                stream.read_option_value()
            elif stream.peek_word() == "PARTITION":
                raise stream.error("partitioned tables are not supported", UnsupportedFeatureError)
            else:
                key = self._read_option_key(stream)
                if key is None:
                    raise stream.error(f"unexpected {stream.peek().text!r} in table options")
                extra[key] = stream.read_option_value()

        engine = engine or SUPPORTED_ENGINE
        if engine.lower() != SUPPORTED_ENGINE.lower():
            raise UnsupportedFeatureError(
                f"storage engine {engine} is not supported, only {SUPPORTED_ENGINE} tables are",
                self.table_name,
            )
        return TableOptions(engine=SUPPORTED_ENGINE, extra=tuple(extra.items()), **attrs)

    @staticmethod
    def _read_option_key(stream: _TokenStream) -> Optional[str]:
        for words in TABLE_OPTION_KEYS:
            if stream.accept(*words):
                return " ".join(words)
        return None


def parse_create_table(sql: str) -> Table:
    """
    Parse one CREATE TABLE statement.

    Args:
        sql: Statement text

    Returns:
        The parsed Table

    Raises:
        ParseError: The statement does not match the supported DDL subset
        UnsupportedFeatureError: Non-InnoDB engine or unsupported construct
    """
    return DDLParser(sql).parse()


# ============================================================================
# SCHEMA LOADING (DUMP FILES AND LIVE DATABASES)
# ============================================================================

def split_statements(text: str) -> Iterator[str]:
    """
    Yield the statements of an SQL dump, split on top-level semicolons.

    Semicolons inside strings, quoted identifiers and comments do not
    split. Statements keep their inner comments; the parser skips them.
    """
    start = None
    end = 0
    for token in tokenize(text):
        if _is_punct(token, ";"):
            if start is not None:
                yield text[start:end]
            start = None
            continue
        if start is None:
            start = token.start
        end = token.end
    if start is not None:
        yield text[start:end]


def extract_create_statements(text: str) -> List[str]:
    """Return the CREATE TABLE statements of a dump, ignoring everything else."""
    statements = []
    for statement in split_statements(text):
        words = [token.text.upper() for token in tokenize(statement)[:2]]
        if words == ["CREATE", "TABLE"]:
            statements.append(statement)
    return statements


def parse_connection_string(conn_str: str) -> Dict[str, Any]:
    """
    Parse a MySQL connection string.

    Format: user:password@host:port~database

    Args:
        conn_str: Connection string; the password may contain '@'

    Returns:
        Dictionary with connection parameters
    """
    match = re.fullmatch(r"([^:]*):(.*)@([^@~]+)~([^~]+)", conn_str)
    if not match:
        raise SchemaConnectionError(
            "Invalid connection string format, expected user:password@host:port~database"
        )

    user, password, address, database = match.groups()
    host, _, port = address.partition(":")
    if port and not port.isdigit():
        raise SchemaConnectionError(f"Invalid port in connection string: {port!r}")

    return {
        'user': user,
        'password': password,
        'host': host,
        'port': int(port) if port else DEFAULT_PORT,
        'database': database,
    }


class DatabaseConnection:
    """
    Manages one MySQL connection and reads table definitions through it.
    """

    def __init__(self, host: str, port: int, user: str, password: str, database: str):
        """
        Initialize database connection parameters.

        Args:
            host: Database host
            port: Database port
            user: Database user
            password: Database password
            database: Database name
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.connection = None

    def __enter__(self):
        """Context manager entry - establish connection."""
        try:
            self.connection = mysql.connector.connect(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=self.database
            )
        except MySQLError as e:
            raise SchemaConnectionError(
                f"Error connecting to database '{self.database}' on {self.host}:{self.port}: {e}"
            ) from e
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close connection."""
        if self.connection and self.connection.is_connected():
            self.connection.close()

    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[tuple]:
        """
        Execute a query and return results.

        Args:
            query: SQL query to execute
            params: Optional query parameters

        Returns:
            List of result tuples
        """
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params or ())
            return cursor.fetchall()
        except MySQLError as e:
            raise SchemaConnectionError(f"Query failed on database '{self.database}': {e}") from e
        finally:
            cursor.close()

    def list_tables(self) -> List[str]:
        """Names of all base tables; views are skipped."""
        rows = self.execute_query("SHOW FULL TABLES")
        return sorted(row[0] for row in rows if row[1] == "BASE TABLE")

    def show_create_table(self, table_name: str) -> str:
        rows = self.execute_query(f"SHOW CREATE TABLE {quote_identifier(table_name)}")
        if not rows:
            raise SchemaConnectionError(f"Table not found: {table_name}")
        # SHOW CREATE TABLE returns (table name, statement)
        return rows[0][1]


class SchemaLoader:
    """
    Builds Schema snapshots from dump files or live databases.

    Table definitions are fetched and parsed by a bounded pool of worker
    threads. The first failure cancels the work still pending and is
    re-raised, so a Schema is only ever returned complete.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers

    def load(self, data_source: str, location: str) -> Schema:
        if data_source == "file":
            return self.load_file(location)
        if data_source == "db":
            return self.load_database(location)
        raise ValueError(f"Invalid data source: {data_source}")

    def load_file(self, path: str) -> Schema:
        """
        Load every CREATE TABLE statement from an SQL dump file.

        Args:
            path: Dump file path

        Returns:
            Schema of the dumped tables
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise SchemaIOError(f"Cannot read schema file '{path}': {e}") from e

        jobs = [partial(self._parse_statements, [statement]) for statement in extract_create_statements(content)]
        return Schema(self._gather(jobs), database_name=path)

    def load_database(self, conn_str: str) -> Schema:
        """
        Load every base table of a live database.

        Args:
            conn_str: Connection string (user:password@host:port~database)

        Returns:
            Schema of the database's tables
        """
        conn_params = parse_connection_string(conn_str)
        with DatabaseConnection(**conn_params) as db:
            table_names = db.list_tables()

        batches = [table_names[i::self.workers] for i in range(min(self.workers, len(table_names)))]
        jobs = [partial(self._fetch_tables, conn_params, batch) for batch in batches]
        return Schema(self._gather(jobs), database_name=conn_params['database'])

    @staticmethod
    def _parse_statements(statements: List[str]) -> List[Table]:
        return [parse_create_table(statement) for statement in statements]

    @staticmethod
    def _fetch_tables(conn_params: Dict[str, Any], table_names: List[str]) -> List[Table]:
        # Each worker holds its own connection; connections are not thread-safe.
        with DatabaseConnection(**conn_params) as db:
            return [parse_create_table(db.show_create_table(name)) for name in table_names]

    def _gather(self, jobs: Sequence[Callable[[], List[Table]]]) -> Dict[str, Table]:
        tables: Dict[str, Table] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(job) for job in jobs]
            try:
                for future in as_completed(futures):
                    for table in future.result():
                        if table.name in tables:
                            raise ParseError("duplicate table definition", table.name)
                        tables[table.name] = table
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        return tables


# ============================================================================
# SCHEMA COMPARISON
# ============================================================================

def _constraint_sort_key(constraint: Constraint) -> Tuple[str, str]:
    return constraint.identity


class SchemaComparator:
    """
    Compares a source schema (desired state) with a target schema
    (current state).
    """

    def __init__(self, source: Schema, target: Schema):
        """
        Initialize the schema comparator.

        Args:
            source: Source schema (desired state)
            target: Target schema (current state)
        """
        self.source = source
        self.target = target

    def compare(self) -> SchemaDiff:
        """
        Diff the two schemas.

        Returns:
            SchemaDiff whose buckets are each sorted by table name
        """
        source_tables = set(self.source.tables.keys())
        target_tables = set(self.target.tables.keys())

        created = tuple(self.source.tables[name] for name in sorted(source_tables - target_tables))
        dropped = tuple(self.target.tables[name] for name in sorted(target_tables - source_tables))

        altered = []
        for table_name in sorted(source_tables & target_tables):
            table_diff = self.compare_tables(self.source.tables[table_name], self.target.tables[table_name])
            if not table_diff.is_empty:
                altered.append(table_diff)

        return SchemaDiff(created=created, dropped=dropped, altered=tuple(altered))

    @staticmethod
    def compare_tables(source_table: Table, target_table: Table) -> TableDiff:
        """
        Compare the structure of two versions of a table.

        Args:
            source_table: Desired version
            target_table: Current version

        Returns:
            TableDiff, empty when the tables are equivalent
        """
        added, removed, modified = SchemaComparator._compare_columns(source_table, target_table)
        added_keys, removed_keys, modified_keys = SchemaComparator._compare_constraints(source_table, target_table)

        options = None
        if source_table.options.changes_from(target_table.options):
            options = OptionsChange(before=target_table.options, after=source_table.options)

        return TableDiff(
            name=source_table.name,
            added_columns=added,
            removed_columns=removed,
            modified_columns=modified,
            added_constraints=added_keys,
            removed_constraints=removed_keys,
            modified_constraints=modified_keys,
            options=options,
        )

    @staticmethod
    def _compare_columns(source_table: Table, target_table: Table):
        """Match columns by name; position changes alone are not differences."""
        source_cols = {col.name: col for col in source_table.columns}
        target_cols = {col.name: col for col in target_table.columns}

        added = tuple(col for col in source_table.columns if col.name not in target_cols)
        removed = tuple(col for col in target_table.columns if col.name not in source_cols)
        modified = tuple(
            ColumnChange(before=target_cols[col.name], after=col)
            for col in source_table.columns
            if col.name in target_cols and not col.same_definition(target_cols[col.name])
        )
        return added, removed, modified

    @staticmethod
    def _compare_constraints(source_table: Table, target_table: Table):
        """
        Match keys by identity. A key whose definition changed is reported
        as modified and is always dropped and re-added, never altered in
        place.
        """
        source_keys = source_table.constraint_map()
        target_keys = target_table.constraint_map()

        added = tuple(sorted(
            (key for identity, key in source_keys.items() if identity not in target_keys),
            key=_constraint_sort_key,
        ))
        removed = tuple(sorted(
            (key for identity, key in target_keys.items() if identity not in source_keys),
            key=_constraint_sort_key,
        ))
        modified = tuple(
            ConstraintChange(before=target_keys[identity], after=source_keys[identity])
            for identity in sorted(source_keys.keys() & target_keys.keys())
            if source_keys[identity] != target_keys[identity]
        )
        return added, removed, modified


def diff_schemas(source: Schema, target: Schema) -> SchemaDiff:
    """Compute the changes that turn ``target`` into ``source``."""
    return SchemaComparator(source, target).compare()


# ============================================================================
# SQL GENERATION
# ============================================================================

class SQLGenerator:
    """
    Renders schema differences as MySQL DDL.
    """

    @staticmethod
    def create_table(table: Table) -> str:
        """Render a table as a CREATE TABLE statement the parser reads back unchanged."""
        items = [column.to_sql() for column in table.columns]
        items.extend(constraint.to_sql() for constraint in table.constraints)
        body = ",\n".join(f"  {item}" for item in items)
        return f"CREATE TABLE {quote_identifier(table.name)} (\n{body}\n) {table.options.to_sql()};"

    @staticmethod
    def drop_table(table_name: str) -> str:
        """Render a DROP TABLE statement."""
        return f"DROP TABLE {quote_identifier(table_name)};"

    @staticmethod
    def alter_clauses(table_diff: TableDiff) -> List[str]:
        """
        Render the clauses of one ALTER TABLE statement in AlterStage order.

        Args:
            table_diff: Differences of one table

        Returns:
            Clause strings, without separators
        """
        clauses: List[Tuple[AlterStage, str]] = []

        dropped_keys = list(table_diff.removed_constraints)
        dropped_keys.extend(change.before for change in table_diff.modified_constraints)
        for constraint in sorted(dropped_keys, key=_constraint_sort_key):
            clauses.append(SQLGenerator._drop_constraint_clause(constraint))

        for column in table_diff.removed_columns:
            clauses.append((AlterStage.DROP_COLUMNS, f"DROP COLUMN {quote_identifier(column.name)}"))

        for column in table_diff.added_columns:
            clauses.append((AlterStage.ADD_COLUMNS, f"ADD COLUMN {column.to_sql()}"))

        for change in table_diff.modified_columns:
            clauses.append((AlterStage.MODIFY_COLUMNS, f"MODIFY COLUMN {change.after.to_sql()}"))

        added_keys = list(table_diff.added_constraints)
        added_keys.extend(change.after for change in table_diff.modified_constraints)
        for constraint in sorted(added_keys, key=_constraint_sort_key):
            clauses.append((SQLGenerator._add_stage(constraint), f"ADD {constraint.to_sql()}"))

        if table_diff.options:
            changes = table_diff.options.after.changes_from(table_diff.options.before)
            if changes:
                clauses.append((AlterStage.TABLE_OPTIONS, " ".join(changes)))

        # Stable sort keeps the per-stage order built above
        clauses.sort(key=lambda clause: clause[0].value)
        return [sql for _, sql in clauses]

    @staticmethod
    def _drop_constraint_clause(constraint: Constraint) -> Tuple[AlterStage, str]:
        if constraint.kind is ConstraintKind.FOREIGN_KEY:
            return AlterStage.DROP_FOREIGN_KEYS, f"DROP FOREIGN KEY {quote_identifier(constraint.name)}"
        if constraint.kind is ConstraintKind.PRIMARY_KEY:
            return AlterStage.DROP_PRIMARY_KEY, "DROP PRIMARY KEY"
        return AlterStage.DROP_INDEXES, f"DROP INDEX {quote_identifier(constraint.name)}"

    @staticmethod
    def _add_stage(constraint: Constraint) -> AlterStage:
        if constraint.kind is ConstraintKind.FOREIGN_KEY:
            return AlterStage.ADD_FOREIGN_KEYS
        if constraint.kind is ConstraintKind.PRIMARY_KEY:
            return AlterStage.ADD_PRIMARY_KEY
        return AlterStage.ADD_INDEXES

    @staticmethod
    def alter_table(table_diff: TableDiff) -> str:
        """
        Render one ALTER TABLE statement holding every clause of a table diff.

        Args:
            table_diff: Non-empty differences of one table

        Returns:
            Single-line ALTER TABLE statement ending in ';'
        """
        clauses = SQLGenerator.alter_clauses(table_diff)
        return f"ALTER TABLE {quote_identifier(table_diff.name)} {', '.join(clauses)};"

    @staticmethod
    def render(diff: SchemaDiff) -> List[Tuple[str, str]]:
        """
        Render one statement per affected table.

        Args:
            diff: Schema differences

        Returns:
            (table_name, sql) pairs sorted by table name
        """
        units = [(table.name, SQLGenerator.create_table(table)) for table in diff.created]
        units.extend((table.name, SQLGenerator.drop_table(table.name)) for table in diff.dropped)
        units.extend((table_diff.name, SQLGenerator.alter_table(table_diff)) for table_diff in diff.altered)
        return sorted(units, key=lambda unit: unit[0])

    @staticmethod
    def render_script(diff: SchemaDiff) -> str:
        """
        Render the complete migration script.

        The script starts with the SET NAMES header, followed by a
        ``-- <table>`` comment line and one statement per affected table.
        """
        lines = [SCRIPT_HEADER, ""]
        for table_name, sql in SQLGenerator.render(diff):
            lines.append(f"-- {table_name}")
            lines.append(sql)
            lines.append("")
        return "\n".join(lines)


def render(diff: SchemaDiff) -> List[Tuple[str, str]]:
    """Render one (table_name, sql) pair per affected table, sorted by name."""
    return SQLGenerator.render(diff)


def render_script(diff: SchemaDiff) -> str:
    """Render the complete migration script for a diff."""
    return SQLGenerator.render_script(diff)


# ============================================================================
# MIGRATION REVIEW
# ============================================================================

_INTEGER_RANKS = {"tinyint": 1, "smallint": 2, "mediumint": 3, "int": 4, "bigint": 5}
_TEXT_RANKS = {"tinytext": 1, "text": 2, "mediumtext": 3, "longtext": 4}
_BLOB_RANKS = {"tinyblob": 1, "blob": 2, "mediumblob": 3, "longblob": 4}
_LENGTH_TYPES = {"char", "varchar", "binary", "varbinary"}
_LOSSY_CONVERSIONS = {
    "text": {"varchar", "char"},
    "mediumtext": {"varchar", "char", "tinytext", "text"},
    "longtext": {"varchar", "char", "tinytext", "text", "mediumtext"},
    "double": {"float", "decimal"},
    "float": {"decimal"},
    "datetime": {"date", "time"},
}


class MigrationReviewer:
    """
    Reviews schema differences and reports data-loss hazards.
    """

    @staticmethod
    def review(diff: SchemaDiff) -> List[MigrationWarning]:
        """
        Review every change in a diff.

        Args:
            diff: Schema differences

        Returns:
            List of MigrationWarning objects, in table order
        """
        warnings = []

        for table in diff.created:
            warnings.extend(MigrationReviewer._review_new_table(table))

        for table in diff.dropped:
            warnings.append(MigrationWarning(
                level=WarningLevel.WARNING,
                message=f"Dropping table '{table.name}' will delete all its data.",
                context=f"Table: {table.name}"
            ))

        for table_diff in diff.altered:
            warnings.extend(MigrationReviewer._review_table_diff(table_diff))

        return warnings

    @staticmethod
    def _review_new_table(table: Table) -> List[MigrationWarning]:
        warnings = []
        if table.primary_key is None:
            warnings.append(MigrationWarning(
                level=WarningLevel.INFO,
                message="Table has no primary key defined.",
                context=f"Table: {table.name}"
            ))
        for constraint in table.constraints:
            warnings.extend(MigrationReviewer._review_foreign_key(table.name, constraint))
        return warnings

    @staticmethod
    def _review_foreign_key(table_name: str, constraint: Constraint) -> List[MigrationWarning]:
        if constraint.kind is not ConstraintKind.FOREIGN_KEY:
            return []
        if len(constraint.columns) == len(constraint.referenced_columns):
            return []
        return [MigrationWarning(
            level=WarningLevel.ERROR,
            message=f"Foreign key '{constraint.name}' has mismatched column counts.",
            context=f"Table: {table_name}"
        )]

    @staticmethod
    def _review_table_diff(table_diff: TableDiff) -> List[MigrationWarning]:
        warnings = []
        context = f"Table: {table_diff.name}"

        for column in table_diff.removed_columns:
            warnings.append(MigrationWarning(
                level=WarningLevel.WARNING,
                message=f"Dropping column '{column.name}' will delete all its data.",
                context=context
            ))

        for column in table_diff.added_columns:
            if not column.nullable and column.default is None and not column.auto_increment:
                warnings.append(MigrationWarning(
                    level=WarningLevel.WARNING,
                    message=f"Adding NOT NULL column '{column.name}' without a default value "
                            f"will fail if the table contains data.",
                    context=context
                ))

        for before, after in table_diff.modified_columns:
            if MigrationReviewer.is_lossy_change(before.column_type, after.column_type):
                warnings.append(MigrationWarning(
                    level=WarningLevel.WARNING,
                    message=f"Changing column '{after.name}' from {before.column_type.to_sql()} "
                            f"to {after.column_type.to_sql()} may cause data loss.",
                    context=context
                ))
            if before.nullable and not after.nullable:
                warnings.append(MigrationWarning(
                    level=WarningLevel.WARNING,
                    message=f"Changing column '{after.name}' from NULL to NOT NULL "
                            f"will fail if NULL values exist.",
                    context=context
                ))

        added_keys = list(table_diff.added_constraints)
        added_keys.extend(change.after for change in table_diff.modified_constraints)
        for constraint in added_keys:
            warnings.extend(MigrationReviewer._review_foreign_key(table_diff.name, constraint))

        if table_diff.options:
            before, after = table_diff.options
            if after.charset and after.charset != before.charset:
                # DEFAULT CHARSET only applies to columns added later
                warnings.append(MigrationWarning(
                    level=WarningLevel.WARNING,
                    message=f"Changing the default character set from {before.charset} to {after.charset} "
                            f"does not convert existing columns; run ALTER TABLE ... CONVERT TO "
                            f"CHARACTER SET {after.charset} to convert them.",
                    context=context
                ))

        return warnings

    @staticmethod
    def is_lossy_change(old_type: ColumnType, new_type: ColumnType) -> bool:
        """
        Check if a column type change might cause data loss.

        Args:
            old_type: Current column type
            new_type: New column type

        Returns:
            True if the change might be lossy
        """
        old_name, new_name = old_type.name, new_type.name

        # Length reduction within the character/binary family
        if old_name in _LENGTH_TYPES and new_name in _LENGTH_TYPES and old_type.params and new_type.params:
            if _to_int(new_type.params[0]) < _to_int(old_type.params[0]):
                return True

        # Precision or scale reduction
        if old_name == new_name == "decimal":
            old_precision = [_to_int(p) for p in old_type.params] + [10, 0][len(old_type.params):]
            new_precision = [_to_int(p) for p in new_type.params] + [10, 0][len(new_type.params):]
            if new_precision[0] < old_precision[0] or new_precision[1] < old_precision[1]:
                return True

        for ranks in (_INTEGER_RANKS, _TEXT_RANKS, _BLOB_RANKS):
            if old_name in ranks and new_name in ranks and ranks[new_name] < ranks[old_name]:
                return True

        if old_name in _INTEGER_RANKS and new_name in _INTEGER_RANKS and old_type.unsigned != new_type.unsigned:
            return True

        return new_name in _LOSSY_CONVERSIONS.get(old_name, set())


def _to_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def review(diff: SchemaDiff) -> List[MigrationWarning]:
    """Report the data-loss hazards of applying a diff."""
    return MigrationReviewer.review(diff)


# ============================================================================
# CLI INTERFACE
# ============================================================================

@dataclass
class Config:
    """
    Settings for one comparison run.

    Attributes:
        data_source: 'file' or 'db'
        source: Source schema location (desired state)
        target: Target schema location (current state)
        output: Path of the migration script to write
        workers: Maximum number of concurrent loader tasks per schema
    """
    data_source: str
    source: str
    target: str
    output: str
    workers: int = DEFAULT_WORKERS


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid worker count: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError("worker count must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="diffschema",
        description="Compare MySQL schemas and generate the DDL that turns the target into the source.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Compare two SQL dump files
  %(prog)s -d file -s new_schema.sql -t old_schema.sql -o migration.sql

  # Compare two live databases
  %(prog)s -d db -s user:pass@localhost:3306~app_dev -t user:pass@db.example.com:3306~app -o migration.sql
        """
    )
    parser.add_argument('-d', '--data', dest='data_source', required=True, choices=['file', 'db'],
                        help="Data source type: 'file' or 'db'")
    parser.add_argument('-s', '--source', required=True,
                        help='Source schema (file path or db connection), the desired state')
    parser.add_argument('-t', '--target', required=True,
                        help='Target schema (file path or db connection), the current state')
    parser.add_argument('-o', '--output', required=True, help='Output SQL file')
    parser.add_argument('-w', '--workers', type=_positive_int, default=DEFAULT_WORKERS,
                        help=f'Concurrent table fetches per schema (default: {DEFAULT_WORKERS})')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def print_warnings(warnings: List[MigrationWarning]):
    """
    Print review warnings to stderr.

    Args:
        warnings: Warnings to print, in order
    """
    print(f"\nFound {len(warnings)} warning(s):", file=sys.stderr)
    for warning in warnings:
        print(f"  [{warning.level.value}] {warning.message}", file=sys.stderr)
        if warning.context:
            print(f"    Context: {warning.context}", file=sys.stderr)


def compare_command(config: Config) -> SchemaDiff:
    """
    Load both schemas, diff them and write the migration script.

    Args:
        config: Run settings

    Returns:
        The computed SchemaDiff
    """
    loader = SchemaLoader(workers=config.workers)

    print(f"Loading source and target schemas ({config.data_source})...", file=sys.stderr)
    with ThreadPoolExecutor(max_workers=2) as executor:
        source_future = executor.submit(loader.load, config.data_source, config.source)
        target_future = executor.submit(loader.load, config.data_source, config.target)
        try:
            source_schema = source_future.result()
            target_schema = target_future.result()
        except BaseException:
            target_future.cancel()
            raise
    print(f"Loaded {len(source_schema.tables)} source table(s) and "
          f"{len(target_schema.tables)} target table(s).", file=sys.stderr)

    print("Analyzing schema differences...", file=sys.stderr)
    diff = diff_schemas(source_schema, target_schema)
    statements = render(diff)

    if statements:
        print(f"Generated {len(statements)} statement(s): {len(diff.created)} create, "
              f"{len(diff.dropped)} drop, {len(diff.altered)} alter.", file=sys.stderr)
        warnings = review(diff)
        if warnings:
            print_warnings(warnings)
    else:
        print("No differences found. Schemas are identical.", file=sys.stderr)

    try:
        with open(config.output, 'w', encoding='utf-8') as f:
            f.write(render_script(diff))
    except OSError as e:
        raise SchemaIOError(f"Cannot write migration script '{config.output}': {e}") from e
    print(f"\nMigration script written to: {config.output}", file=sys.stderr)

    return diff


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config(
        data_source=args.data_source,
        source=args.source,
        target=args.target,
        output=args.output,
        workers=args.workers,
    )

    try:
        compare_command(config)
    except SchemaDiffError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
