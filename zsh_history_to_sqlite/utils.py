"Parsing and SQLite insertion logic for zsh history files."
import collections
import functools
import io
import logging
import re
import sqlite3
import time

logger = logging.getLogger(__name__)

DEFAULT_IGNORE = "cd,ls,top,htop"

# ": 1609459200:0" with the ";" separating it from the command missing
METADATA_PREFIX = re.compile(r":\s*\d+:\d+")


# --- Errors ---

class HistoryImportError(Exception):
    "Base class for every error that aborts an import."


class ReadError(HistoryImportError):
    "The history could not be read or is not valid UTF-8."


class MalformedEntry(HistoryImportError, ValueError):
    def __init__(self, text):
        super().__init__(f"Unable to parse entry: {text!r}")
        self.text = text


class MalformedTimestamp(HistoryImportError, ValueError):
    def __init__(self, text):
        super().__init__(f"Unable to parse timestamp: {text!r}")
        self.text = text


class SinkError(HistoryImportError):
    "Writing a record to the database failed."


# --- Types ---

Timestamped = collections.namedtuple("Timestamped", "started duration command")
Bare = collections.namedtuple("Bare", "command")

ImportContext = collections.namedtuple(
    "ImportContext",
    "host dir session exit_status ignore preserve_order",
    defaults=("UNKNOWN", "", 0, 0, frozenset(), False),
)


def parse_ignore(value):
    "Turn a comma-separated list of commands into a set of exact matches."
    if not value:
        return frozenset()
    return frozenset(item for item in value.split(",") if item)


# --- Reading logical entries ---

def _decode(line):
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ReadError(f"History line is not valid UTF-8: {line!r}") from e
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def iter_entries(lines):
    """Yield logical history entries from an iterable of physical lines.

    A line ending in a backslash continues onto the next one; the backslash
    becomes a newline in the joined entry. Empty lines come through as ""
    so callers can skip them. If the stream ends in the middle of a
    continued entry, that partial entry is still yielded.
    """
    entry = ""
    try:
        for line in lines:
            entry += _decode(line)
            if not entry:
                yield entry
                continue
            if entry.endswith("\\"):
                entry = entry[:-1] + "\n"
                continue
            yield entry
            entry = ""
    except OSError as e:
        raise ReadError(f"Unable to read history: {e}") from e
    if entry:
        yield entry


class CaptureReader:
    """Iterate a binary stream line by line, keeping a copy of every line.

    The copy can be read again with replay(), which is how a stream that
    cannot be rewound (a pipe, stdin) gets a second pass.
    """

    def __init__(self, fp):
        self.fp = fp
        self.buffer = io.BytesIO()

    def __iter__(self):
        for line in self.fp:
            self.buffer.write(line)
            yield line

    def replay(self):
        return io.BytesIO(self.buffer.getvalue())


# --- Parsing entries ---

def split_entry(entry):
    "Classify an entry as Timestamped (extended history) or Bare."
    if ";" not in entry:
        if METADATA_PREFIX.match(entry):
            raise MalformedEntry(entry)
        return Bare(entry)
    prefix, command = entry.split(";", 1)
    fields = prefix.split(":")
    if len(fields) != 3:
        raise MalformedTimestamp(prefix)
    return Timestamped(fields[1].strip(), fields[2].strip(), command)


def parse_entry(entry, timestamp):
    "Parse an entry into a record, using timestamp if it carries none."
    parsed = split_entry(entry)
    if isinstance(parsed, Bare):
        return {
            "started": str(timestamp),
            "duration": "0",
            "command": parsed.command,
        }
    return {
        "started": parsed.started,
        "duration": parsed.duration,
        "command": parsed.command,
    }


# --- Import ---

def count_records(lines, ignore, timestamp):
    "Count the records an import of these lines would insert."
    count = 0
    for entry in iter_entries(lines):
        if not entry:
            continue
        if parse_entry(entry, timestamp)["command"] not in ignore:
            count += 1
    return count


def iter_records(lines, ignore, timestamp, preserve_order=False):
    """Yield the records to insert, in history order.

    With preserve_order the n-th accepted record falls back to
    timestamp + n instead of timestamp.
    """
    position = 0
    for entry in iter_entries(lines):
        if not entry:
            continue
        fallback = timestamp + position if preserve_order else timestamp
        record = parse_entry(entry, fallback)
        if record["command"] in ignore:
            logger.info("Skipping %r", record)
            continue
        position += 1
        yield record


def import_history(fp, insert, ignore=frozenset(), preserve_order=False, now=None):
    """Read history from a binary stream and call insert() for each record.

    Without timestamps in the file every command would share the current
    time. preserve_order reads the history once to count the records, then
    replays it so they end up one second apart, the last one at now.

    Returns the number of records passed to insert().
    """
    if now is None:
        now = int(time.time())
    timestamp = now
    if preserve_order:
        capture = CaptureReader(fp)
        count = count_records(capture, ignore, now)
        timestamp = now - count
        logger.info("%d records to import, starting at %d", count, timestamp)
        fp = capture.replay()

    inserted = 0
    for record in iter_records(fp, ignore, timestamp, preserve_order):
        logger.info("Inserting %r", record)
        insert(record)
        inserted += 1
    return inserted


# --- SQLite insertion ---

COMMANDS_COLUMNS = {"id": int, "argv": str}
PLACES_COLUMNS = {"id": int, "host": str, "dir": str}
HISTORY_COLUMNS = {
    "id": int,
    "session": int,
    "command_id": int,
    "place_id": int,
    "exit_status": int,
    "start_time": int,
    "duration": int,
}

INSERT_COMMAND = "INSERT OR IGNORE INTO commands (argv) VALUES (?)"
INSERT_PLACE = "INSERT OR IGNORE INTO places (host, dir) VALUES (?, ?)"
INSERT_HISTORY = """
    INSERT INTO history (session, command_id, place_id, exit_status, start_time, duration)
    SELECT ?, commands.id, places.id, ?, ?, ?
    FROM commands, places
    WHERE commands.argv = ? AND places.host = ? AND places.dir = ?
"""


def ensure_schema(db):
    "Create the zsh-histdb tables if they are missing."
    db["commands"].create(COMMANDS_COLUMNS, pk="id", if_not_exists=True)
    db["commands"].create_index(["argv"], unique=True, if_not_exists=True)
    db["places"].create(PLACES_COLUMNS, pk="id", if_not_exists=True)
    db["places"].create_index(["host", "dir"], unique=True, if_not_exists=True)
    db["history"].create(
        HISTORY_COLUMNS,
        pk="id",
        foreign_keys=[
            ("command_id", "commands", "id"),
            ("place_id", "places", "id"),
        ],
        if_not_exists=True,
    )


def insert_entry(db, context, record):
    "Insert one record, reusing existing command and place rows."
    try:
        db.execute(INSERT_COMMAND, [record["command"]])
        db.execute(INSERT_PLACE, [context.host, context.dir])
        db.execute(
            INSERT_HISTORY,
            [
                context.session,
                context.exit_status,
                record["started"],
                record["duration"],
                record["command"],
                context.host,
                context.dir,
            ],
        )
    except sqlite3.Error as e:
        raise SinkError(f"Unable to insert {record!r}: {e}") from e


def save_history(db, fp, context, now=None, insert=insert_entry):
    """Import a history stream into db as a single transaction.

    Either every record is committed or, if anything fails, none are.
    The transaction is opened on the raw connection so db.execute() sees it
    and leaves committing to us.
    """
    try:
        ensure_schema(db)
        if not db.conn.in_transaction:
            db.conn.execute("BEGIN")
    except sqlite3.Error as e:
        raise SinkError(f"Unable to start import: {e}") from e

    try:
        count = import_history(
            fp,
            functools.partial(insert, db, context),
            ignore=context.ignore,
            preserve_order=context.preserve_order,
            now=now,
        )
        db.conn.execute("COMMIT")
    except sqlite3.Error as e:
        _rollback(db)
        raise SinkError(f"Unable to commit import: {e}") from e
    except Exception:
        _rollback(db)
        raise
    return count


def _rollback(db):
    if db.conn.in_transaction:
        db.conn.execute("ROLLBACK")


VIEWS = {
    "history_overview": {
        "requires": ["history", "commands", "places"],
        "sql": """
            SELECT
                history.id,
                datetime(history.start_time, 'unixepoch') as started,
                history.duration,
                history.session,
                history.exit_status,
                places.host,
                places.dir,
                commands.argv
            FROM history
            JOIN commands ON history.command_id = commands.id
            JOIN places ON history.place_id = places.id
            ORDER BY history.start_time DESC
        """,
    },
}


def ensure_db_shape(db):
    "Set up indexes and views after all data is inserted."
    table_names = db.table_names()

    if "history" in table_names:
        for cols in [["start_time"], ["session"]]:
            db["history"].create_index(cols, if_not_exists=True)

    for view_name, view_conf in VIEWS.items():
        if all(t in table_names for t in view_conf["requires"]):
            db.create_view(view_name, view_conf["sql"], replace=True)

    db.index_foreign_keys()


def history_stats(db, limit=10):
    "Collect row counts, the most used commands and the time range."
    top_commands = db.execute(
        "SELECT commands.argv, count(*) as c FROM history "
        "JOIN commands ON history.command_id = commands.id "
        "GROUP BY commands.argv ORDER BY c DESC LIMIT ?",
        [limit],
    ).fetchall()
    first, last = db.execute(
        "SELECT min(start_time), max(start_time) FROM history"
    ).fetchone()
    return {
        "history": db["history"].count,
        "commands": db["commands"].count,
        "places": db["places"].count,
        "top_commands": top_commands,
        "first": first,
        "last": last,
    }
