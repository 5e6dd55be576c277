#!/usr/bin/env python3
"""Selection prompt fed by the output of a background program

Candidates of an asynchronous source are produced by an external program
while the prompt is already shown, the prompt is periodically redisplayed
so newly arrived candidates become visible without a keystroke.
"""
import array
import asyncio
import codecs
import fcntl
import io
import logging
import operator as op
import os
import signal
import subprocess
import sys
import termios
import tty
from collections import namedtuple
from contextlib import ExitStack
from functools import reduce

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Utils
# ------------------------------------------------------------------------------
class Event:
    """Event with multiple handlers

    Handler stays subscribed as long as it returns true value.
    """

    __slots__ = ("handlers",)

    def __init__(self):
        self.handlers = []

    def __call__(self, event):
        handlers, self.handlers = self.handlers, []
        for handler in handlers:
            if handler(event):
                self.handlers.append(handler)

    def on(self, handler):
        self.handlers.append(handler)
        return self

    def on_once(self, handler):
        def handler_once(event):
            handler(event)
            return False

        self.handlers.append(handler_once)
        return self

    def __await__(self):
        def resolve(event):
            if not future.done():
                future.set_result(event)

        future = asyncio.get_running_loop().create_future()
        self.on_once(resolve)
        return future.__await__()


class Sentinel:
    __slots__ = ("name",)

    def __init__(self, name):
        self.name = name

    def __repr__(self):
        return f"<{self.name}>"


def printable(text):
    return "".join(c if c.isprintable() else " " for c in text.expandtabs(4))


def split_lines(text):
    """Split text into non-empty lines, `\\r\\n` endings are accepted"""
    lines = (line[:-1] if line.endswith("\r") else line for line in text.split("\n"))
    return list(filter(None, lines))


# ------------------------------------------------------------------------------
# Matching
# ------------------------------------------------------------------------------
SCORE_MIN = float("-inf")
WORD_BOUNDARY = " /-_.:"


def fuzzy_scorer(needle, haystack):
    """Needle must be a subsequence of haystack

    Compact matches, matches near the beginning and matches on word
    boundaries score higher.
    """
    needle_lower, haystack_lower = needle.lower(), haystack.lower()
    positions, offset = [], 0
    for char in needle_lower:
        offset = haystack_lower.find(char, offset)
        if offset < 0:
            return SCORE_MIN, None
        positions.append(offset)
        offset += 1
    if not positions:
        return 0, positions
    # pull each position to the right as far as the next one allows
    for index in range(len(positions) - 2, -1, -1):
        found = haystack_lower.rfind(
            needle_lower[index], positions[index], positions[index + 1]
        )
        if found >= 0:
            positions[index] = found
    bonus = sum(
        1 for p in positions if p == 0 or haystack[p - 1] in WORD_BOUNDARY
    )
    match_len = positions[-1] + 1 - positions[0]
    return -match_len + bonus + 1 / (positions[0] + 1), positions


def substr_scorer(needle, haystack):
    """Space separated words of needle must appear in haystack in order"""
    positions, offset = [], 0
    needle, haystack = needle.lower(), haystack.lower()
    for word in needle.split(" "):
        if not word:
            continue
        offset = haystack.find(word, offset)
        if offset < 0:
            return SCORE_MIN, None
        positions.extend(range(offset, offset + len(word)))
        offset += len(word)
    if not positions:
        return 0, positions
    match_len = positions[-1] + 1 - positions[0]
    return -match_len + 2 / (positions[0] + 1) + 1 / (positions[-1] + 1), positions


def prefix_scorer(needle, haystack):
    if not haystack.lower().startswith(needle.lower()):
        return SCORE_MIN, None
    return len(needle) - len(haystack), list(range(len(needle)))


SCORER_DEFAULT = "fuzzy"
SCORERS = {"fuzzy": fuzzy_scorer, "substr": substr_scorer, "prefix": prefix_scorer}

RankResult = namedtuple("RankResult", ("score", "index", "haystack", "positions"))


def rank(scorer, needle, haystack, keep_order=False):
    """Score haystack against needle, best matches first"""
    results = []
    for index, item in enumerate(haystack):
        score, positions = scorer(needle, str(item))
        if positions is None:
            continue
        results.append(RankResult(-score, index, item, positions))
    if not keep_order:
        results.sort(key=op.itemgetter(0, 1))
    return results


ACTION_TRY = "try"
ACTION_ALL = "all"
ACTION_TEST = "test"
ACTION_METADATA = "metadata"
ACTIONS = (ACTION_TRY, ACTION_ALL, ACTION_TEST, ACTION_METADATA)


def complete_with_action(action, collection, text, predicate=None, scorer=None):
    """Answer completion query over a plain collection of candidates

    - ACTION_ALL - matching candidates, ranked unless text is empty
    - ACTION_TRY - `None` if nothing matches, `True` if text is the only
      match, otherwise the longest common prefix of matches extending text
    - ACTION_TEST - whether text itself is an accepted candidate
    - ACTION_METADATA - empty metadata
    """
    if action not in ACTIONS:
        raise ValueError(f"unknown completion action: {action!r}")
    if action == ACTION_METADATA:
        return {}

    candidates = [c for c in collection if predicate is None or predicate(c)]
    if action == ACTION_TEST:
        return text in candidates

    scorer = scorer or SCORERS[SCORER_DEFAULT]
    matches = [r.haystack for r in rank(scorer, text, candidates, keep_order=not text)]
    if action == ACTION_ALL:
        return matches

    if not matches:
        return None
    if matches == [text]:
        return True
    extending = [match for match in matches if match.startswith(text)]
    if not extending:
        return text
    return os.path.commonprefix(extending)


# ------------------------------------------------------------------------------
# Candidate sources
# ------------------------------------------------------------------------------
OUTPUT_BUFFER = Sentinel("output-buffer")


class CandidateSource:
    """Provider of candidates for a selection prompt

    Single entry point `source(text, predicate, action)` dispatches metadata
    requests to `metadata` and everything else to `query`.
    """

    __slots__ = ()

    def metadata(self, text, predicate=None):
        return {}

    def query(self, text, predicate, action):
        raise NotImplementedError()

    def __call__(self, text, predicate=None, action=ACTION_ALL):
        if action == ACTION_METADATA:
            return self.metadata(text, predicate)
        return self.query(text, predicate, action)


class BufferAccessor:
    """Capability to reach the output buffer of an asynchronous session"""

    __slots__ = ()

    def output_buffer(self):
        raise NotImplementedError()


class StaticSource(CandidateSource):
    __slots__ = ("items", "scorer")

    def __init__(self, items, scorer=None):
        self.items = list(items)
        self.scorer = scorer

    def query(self, text, predicate, action):
        return complete_with_action(action, self.items, text, predicate, self.scorer)

    def __len__(self):
        return len(self.items)


class LazySource(CandidateSource):
    """Candidates are computed by `fn()` on the first query"""

    __slots__ = ("fn", "items", "scorer")

    def __init__(self, fn, scorer=None):
        self.fn = fn
        self.items = None
        self.scorer = scorer

    def query(self, text, predicate, action):
        if self.items is None:
            self.items = list(self.fn())
        return complete_with_action(action, self.items, text, predicate, self.scorer)


class LinesFromProcess(CandidateSource):
    """Lines printed by an external program

    Output is parsed incrementally, each poll only splits the text added to
    the buffer since the previous poll. An unterminated last line is only
    taken once the program has closed its output.
    """

    CATEGORY = "lines-from-process"

    __slots__ = ("command", "lines", "buffer", "offset", "scorer")

    def __init__(self, program, *args, scorer=None):
        self.command = (program, *args)
        self.scorer = scorer
        self.lines = []
        self.buffer = None
        self.offset = 0  # position in the buffer parsed so far

    def metadata(self, text, predicate=None):
        return {"async": self.command, "category": self.CATEGORY}

    def query(self, text, predicate, action):
        if isinstance(predicate, BufferAccessor):
            self.collect(predicate.output_buffer())
        return complete_with_action(action, self.lines, text, predicate, self.scorer)

    def collect(self, buffer):
        """Parse lines which have arrived in the buffer"""
        if buffer is not self.buffer:
            # new session starts collecting from scratch
            self.buffer, self.lines, self.offset = buffer, [], 0
        assert self.offset <= len(buffer), "read position is past the buffer end"

        text = buffer.read(self.offset)
        end = len(text) if buffer.finished else text.rfind("\n") + 1
        if end:
            self.lines.extend(split_lines(text[:end]))
            self.offset += end
        return self.lines


def lines_from_process(program, *args, scorer=None):
    return LinesFromProcess(program, *args, scorer=scorer)


def complete(text, source, predicate=None, action=ACTION_ALL, scorer=None):
    """Query any kind of candidate source

    Source is either a `CandidateSource`, a function with the same
    `(text, predicate, action)` signature, or a plain collection.
    """
    if isinstance(source, CandidateSource) or callable(source):
        return source(text, predicate, action)
    return complete_with_action(action, source, text, predicate, scorer)


def completion_metadata(text, source, predicate=None):
    """Metadata of a candidate source, empty for plain collections"""
    if isinstance(source, CandidateSource) or callable(source):
        metadata = source(text, predicate, ACTION_METADATA)
        return dict(metadata) if metadata else {}
    return {}


# ------------------------------------------------------------------------------
# Output buffer and process
# ------------------------------------------------------------------------------
REFRESH_DELAY = 0.3


class BufferClosedError(RuntimeError):
    """Output buffer has been used after its session ended"""


class OutputBuffer:
    """Append-only text sink for the output of an external program

    Bytes are decoded incrementally, so a character split between two
    chunks is appended once complete. `update` fires on every change.
    """

    __slots__ = ("chunks", "size", "decoder", "finished", "closed", "update")

    def __init__(self, encoding="utf-8"):
        self.chunks = io.StringIO()
        self.size = 0
        self.decoder = codecs.getincrementaldecoder(encoding)(errors="backslashreplace")
        self.finished = False  # writer has closed its end
        self.closed = False  # buffer has been destroyed
        self.update = Event()

    def __len__(self):
        return self.size

    def _check(self):
        if self.closed:
            raise BufferClosedError("output buffer is closed")

    def _write(self, text):
        if text:
            self.chunks.write(text)
            self.size += len(text)

    def append(self, data: bytes) -> None:
        self._check()
        if self.finished:
            raise ValueError("can not append to finished output buffer")
        self._write(self.decoder.decode(data))
        self.update(self)

    def finish(self) -> None:
        self._check()
        if not self.finished:
            self._write(self.decoder.decode(b"", True))
            self.finished = True
            self.update(self)

    def read(self, start=0) -> str:
        """Text from `start` position up to the current end"""
        self._check()
        if not 0 <= start <= self.size:
            raise IndexError(f"read position out of range: {start}")
        return self.chunks.getvalue()[start:]

    async def drained(self):
        """Wait until the writer has closed its end"""
        while not (self.finished or self.closed):
            await self.update

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.chunks.close()
            self.update(self)

    def __enter__(self):
        return self

    def __exit__(self, et, eo, tb):
        self.close()
        return False


class ProcessHandle:
    """Running external program writing its standard output to a buffer

    Output is only ever read when the loop reports it readable. Closing is
    synchronous so the process never outlives its session: it is sent
    SIGTERM, and if it is still alive after `TERMINATE_TIMEOUT` seconds
    it is killed, which bounds how long `close` may block the loop.
    """

    __slots__ = ("process", "buffer", "loop", "fd")
    TERMINATE_TIMEOUT = 0.5

    def __init__(self, program, args, buffer, *, loop=None):
        self.loop = loop or asyncio.get_running_loop()
        self.buffer = buffer
        self.fd = None
        self.process = subprocess.Popen(
            (program, *args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )
        logger.debug("spawned %s (pid %d)", program, self.process.pid)
        try:
            self.fd = self.process.stdout.fileno()
            os.set_blocking(self.fd, False)
            self.loop.add_reader(self.fd, self._try_read)
        except BaseException:
            self.close()
            raise

    @property
    def pid(self):
        return self.process.pid

    @property
    def running(self):
        return self.process.poll() is None

    def _try_read(self):
        try:
            chunk = os.read(self.fd, 4096)
        except BlockingIOError:
            return
        except OSError as error:
            logger.warning("reading output of pid %d failed: %s", self.pid, error)
            chunk = b""
        if chunk:
            self.buffer.append(chunk)
        else:
            self._detach()
            self.buffer.finish()
            logger.debug("pid %d closed its output", self.pid)

    def _detach(self):
        if self.fd is not None:
            fd, self.fd = self.fd, None
            self.loop.remove_reader(fd)

    def close(self) -> None:
        """Terminate (kill after grace period) and reap the process"""
        self._detach()
        process = self.process
        try:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(self.TERMINATE_TIMEOUT)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        except OSError as error:
            logger.warning("failed to terminate pid %d: %s", process.pid, error)
        finally:
            process.stdout.close()
        logger.debug("pid %d exited with %s", process.pid, process.returncode)

    def __enter__(self):
        return self

    def __exit__(self, et, eo, tb):
        self.close()
        return False


class RefreshTicker:
    """Invoke refresh action every `delay` seconds while the loop is idle"""

    __slots__ = ("action", "delay", "loop", "handle", "ticks")

    def __init__(self, action, delay=REFRESH_DELAY, *, loop=None):
        if delay <= 0:
            raise ValueError(f"refresh delay must be positive: {delay}")
        self.action = action
        self.delay = delay
        self.loop = loop or asyncio.get_running_loop()
        self.handle = None
        self.ticks = 0

    @property
    def active(self):
        return self.handle is not None

    def start(self):
        if self.handle is None:
            self.handle = self.loop.call_later(self.delay, self._tick)
        return self

    def _tick(self):
        self.handle = self.loop.call_later(self.delay, self._tick)
        self.ticks += 1
        try:
            self.action()
        except Exception:
            logger.exception("refresh action %r failed", self.action)

    def cancel(self):
        if self.handle is not None:
            handle, self.handle = self.handle, None
            handle.cancel()

    def __enter__(self):
        return self.start()

    def __exit__(self, et, eo, tb):
        self.cancel()
        return False


class QueryChannel(BufferAccessor):
    """Predicate handed to the selection function of an async session

    Called with `OUTPUT_BUFFER` it returns the session buffer, any other
    candidate is passed to the original predicate (accepted if there is
    none).
    """

    __slots__ = ("buffer", "predicate")

    def __init__(self, buffer, predicate=None):
        self.buffer = buffer
        self.predicate = predicate

    def output_buffer(self):
        return self.buffer

    def __call__(self, candidate):
        if candidate is OUTPUT_BUFFER:
            return self.buffer
        if self.predicate is None:
            return True
        return self.predicate(candidate)


# ------------------------------------------------------------------------------
# TTY
# ------------------------------------------------------------------------------
TTY_KEY = 0
TTY_CHAR = 1
TTY_SIZE = 2
TTY_CLOSE = 3

KEY_MODE_ALT = 0b010
KEY_MODE_CTRL = 0b100

TTYEvent = namedtuple("TTYEvent", ("type", "attrs"))
TTYSize = namedtuple("TTYSize", ("height", "width"))


class KeyParser:
    """Incremental decoder of terminal input into `TTYEvent`s"""

    ESCAPE_SEQUENCES = {
        "[A": "up",
        "[B": "down",
        "[C": "right",
        "[D": "left",
        "[H": "home",
        "[F": "end",
        "OA": "up",
        "OB": "down",
        "OC": "right",
        "OD": "left",
        "OH": "home",
        "OF": "end",
        "[1~": "home",
        "[3~": "delete",
        "[4~": "end",
        "[5~": "pageup",
        "[6~": "pagedown",
        "[7~": "home",
        "[8~": "end",
    }
    KEYS = {"\r": "enter", "\n": "enter", "\t": "tab", "\x7f": "backspace"}

    __slots__ = ("decoder", "pending")

    def __init__(self):
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.pending = ""

    def __call__(self, chunk: bytes):
        """Feed chunk of input, returns list of complete events

        Incomplete escape sequence (lone escape included) is kept in
        `pending` until more input arrives or `flush` is called.
        """
        return self.parse(self.decoder.decode(chunk))

    def flush(self):
        """Events for pending input once no continuation is expected"""
        pending, self.pending = self.pending, ""
        if not pending:
            return []
        return [TTYEvent(TTY_KEY, ("escape", 0))] + self.parse(pending[1:])

    def parse(self, text):
        data, self.pending = self.pending + text, ""
        events, index = [], 0
        while index < len(data):
            char = data[index]
            if char == "\x1b":
                event, index_next = self._escape(data, index + 1)
                if index_next is None:
                    self.pending = data[index:]
                    break
                index = index_next
                if event is not None:
                    events.append(event)
                continue
            index += 1
            name = self.KEYS.get(char)
            if name is not None:
                events.append(TTYEvent(TTY_KEY, (name, 0)))
            elif char < " ":
                events.append(TTYEvent(TTY_KEY, (chr(ord(char) + 96), KEY_MODE_CTRL)))
            else:
                events.append(TTYEvent(TTY_CHAR, char))
        return events

    def _escape(self, data, index):
        """Parse escape sequence, `data[index]` follows escape character

        Returns `(event, next_index)`, `next_index` is `None` if sequence
        is incomplete, `event` is `None` if sequence is not recognized.
        """
        if index >= len(data):
            return None, None
        if data[index] == "\x1b":
            return TTYEvent(TTY_KEY, ("escape", 0)), index
        char = data[index]
        if char == "[":
            end = index + 1
            while end < len(data) and not ("@" <= data[end] <= "~"):
                end += 1
            if end >= len(data):
                return None, None
            code = data[index : end + 1]
            # modified keys such as `[1;5A` fall back to their base key
            name = self.ESCAPE_SEQUENCES.get(code) or self.ESCAPE_SEQUENCES.get(
                "[" + code[-1]
            )
            return (None if name is None else TTYEvent(TTY_KEY, (name, 0))), end + 1
        elif char == "O":
            if index + 1 >= len(data):
                return None, None
            name = self.ESCAPE_SEQUENCES.get(data[index : index + 2])
            return (None if name is None else TTYEvent(TTY_KEY, (name, 0))), index + 2
        return TTYEvent(TTY_KEY, (char, KEY_MODE_ALT)), index + 1


class TTY:
    """Asynchronous tty device in raw mode

    Iterate with `async for` to receive key and resize events.
    """

    DEFAULT_FILE = "/dev/tty"
    ESCAPE_TIMEOUT = 0.05
    EPILOGUE = (
        # enable autowrap
        b"\x1b[?7h"
        # visible cursor
        b"\x1b[?25h"
        # reset color settings
        b"\x1b[00m"
    )

    def __init__(self, *, file=None, loop=None):
        if isinstance(file, int):
            self.fd = file
        else:
            self.fd = os.open(file or self.DEFAULT_FILE, os.O_RDWR)
        assert os.isatty(self.fd), f"file must be a tty: {file}"

        self.loop = loop or asyncio.get_running_loop()
        self.size = TTYSize(0, 0)
        self.events = asyncio.Queue()
        self.parser = KeyParser()
        self.write_buffer = io.StringIO()
        self.escape_handle = None
        self.closed = False

        self.attrs = termios.tcgetattr(self.fd)
        attrs = termios.tcgetattr(self.fd)
        attrs[tty.IFLAG] &= ~reduce(
            op.or_,
            (
                # disable flow control ctlr-{s,q}
                termios.IXON,
                termios.IXOFF,
                # carriage return
                termios.ICRNL,
                termios.INLCR,
                termios.IGNCR,
            ),
        )
        attrs[tty.LFLAG] &= ~reduce(
            op.or_, (termios.ECHO, termios.ICANON, termios.IEXTEN, termios.ISIG)
        )
        termios.tcsetattr(self.fd, termios.TCSADRAIN, attrs)
        os.set_blocking(self.fd, False)

        self._resize()
        self.loop.add_signal_handler(signal.SIGWINCH, self._resize)
        self.loop.add_reader(self.fd, self._try_read)

    def _resize(self):
        buf = array.array("H", (0, 0, 0, 0))
        if fcntl.ioctl(self.fd, termios.TIOCGWINSZ, buf):
            self.size = TTYSize(0, 0)
        else:
            self.size = TTYSize(buf[0], buf[1])
        self.events.put_nowait(TTYEvent(TTY_SIZE, self.size))

    def _try_read(self):
        try:
            chunk = os.read(self.fd, 1024)
        except BlockingIOError:
            return
        if not chunk:
            self.close()
            return
        if self.escape_handle is not None:
            self.escape_handle.cancel()
            self.escape_handle = None
        for event in self.parser(chunk):
            self.events.put_nowait(event)
        if self.parser.pending:
            # lone escape key is only known once nothing follows it
            self.escape_handle = self.loop.call_later(
                self.ESCAPE_TIMEOUT, self._flush_pending
            )

    def _flush_pending(self):
        self.escape_handle = None
        for event in self.parser.flush():
            self.events.put_nowait(event)

    def write_sync(self, data: bytes) -> None:
        while data:
            try:
                data = data[os.write(self.fd, data) :]
            except BlockingIOError:
                pass

    def write(self, text: str) -> None:
        self.write_buffer.write(text)

    def flush(self) -> None:
        frame = self.write_buffer.getvalue()
        self.write_buffer.truncate(0)
        self.write_buffer.seek(0)
        self.write_sync(frame.encode())

    def autowrap_set(self, enable):
        self.write("\x1b[?7h" if enable else "\x1b[?7l")

    def cursor_save(self):
        self.write("\x1b7")

    def cursor_restore(self):
        self.write("\x1b8")

    def cursor_up(self, count: int) -> None:
        if count > 0:
            self.write(f"\x1b[{count}A")

    def cursor_to_column(self, column: int) -> None:
        """Move cursor to zero based column"""
        if column < 0:
            raise ValueError(f"column index can not be negative: {column}")
        self.write(f"\x1b[{column + 1}G")

    def erase_line(self) -> None:
        self.write("\x1b[K")

    def erase_down(self) -> None:
        self.write("\x1b[J")

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self.events.get()
        if event.type == TTY_CLOSE:
            raise StopAsyncIteration()
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.escape_handle is not None:
            self.escape_handle.cancel()
            self.escape_handle = None
        self.loop.remove_signal_handler(signal.SIGWINCH)
        self.loop.remove_reader(self.fd)
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.attrs)
        self.write_sync(self.EPILOGUE)
        os.set_blocking(self.fd, True)
        os.close(self.fd)
        self.events.put_nowait(TTYEvent(TTY_CLOSE, None))

    def __enter__(self):
        return self

    def __exit__(self, et, eo, tb):
        self.close()
        return False


# ------------------------------------------------------------------------------
# Selector
# ------------------------------------------------------------------------------
class SelectCancelled(Exception):
    """User has aborted the selection"""


class Selector:
    """Selection state rendered below the current line of a tty

    `Selector.active` is the innermost selector currently shown.
    """

    active = None

    def __init__(self, tty, prompt, source, predicate=None, initial=None, *, height=None):
        self.tty = tty
        self.prompt = prompt
        self.source = source
        self.predicate = predicate
        self.height = height or 10
        self.input = list(initial or "")
        self.cursor = len(self.input)
        self.items = []
        self.index = 0  # selected item
        self.offset = 0  # first visible item
        self.result = None
        self.previous = None

    @property
    def text(self):
        return "".join(self.input)

    @property
    def selected(self):
        if 0 <= self.index < len(self.items):
            return self.items[self.index]
        return None

    def __enter__(self):
        self.previous, Selector.active = Selector.active, self
        tty = self.tty
        tty.autowrap_set(False)
        # reserve space (force scroll)
        tty.write("\n" * self.height)
        tty.cursor_up(self.height)
        tty.cursor_to_column(0)
        tty.cursor_save()
        self.refresh()
        return self

    def __exit__(self, et, eo, tb):
        Selector.active = self.previous
        tty = self.tty
        tty.cursor_restore()
        tty.write("\x1b[00m")
        tty.erase_down()
        tty.autowrap_set(True)
        tty.flush()
        return False

    def refresh(self):
        """Query candidates for the current input and redraw"""
        self.items = list(complete(self.text, self.source, self.predicate, ACTION_ALL))
        self.move(0)
        self.render()

    def update(self):
        self.index = self.offset = 0
        self.refresh()

    def move(self, count):
        if not self.items:
            self.index = self.offset = 0
            return
        self.index = max(0, min(len(self.items) - 1, self.index + count))
        if self.index < self.offset:
            self.offset = self.index
        elif self.index >= self.offset + self.height:
            self.offset = self.index - self.height + 1

    def __call__(self, event):
        """Handle tty event, returns `True` once candidate is chosen"""
        type, attrs = event
        if type == TTY_CHAR:
            self.input.insert(self.cursor, attrs)
            self.cursor += 1
            self.update()
            return False
        elif type == TTY_SIZE:
            self.render()
            return False
        elif type != TTY_KEY:
            return False

        name, mode = attrs
        if mode & KEY_MODE_CTRL:
            name = f"ctrl-{name}"
        elif mode & KEY_MODE_ALT:
            name = f"alt-{name}"

        if name in ("ctrl-c", "ctrl-g", "escape"):
            raise SelectCancelled()
        elif name == "enter":
            selected = self.selected
            self.result = self.text if selected is None else selected
            return True
        elif name == "tab":
            selected = self.selected
            if selected is not None:
                self.input = list(str(selected))
                self.cursor = len(self.input)
                self.update()
        elif name in ("backspace", "ctrl-h"):
            if self.cursor > 0:
                self.cursor -= 1
                del self.input[self.cursor]
                self.update()
        elif name in ("delete", "ctrl-d"):
            if self.cursor < len(self.input):
                del self.input[self.cursor]
                self.update()
        elif name == "ctrl-k":
            del self.input[self.cursor :]
            self.update()
        elif name == "ctrl-u":
            del self.input[: self.cursor]
            self.cursor = 0
            self.update()
        elif name in ("left", "ctrl-b"):
            self.cursor = max(0, self.cursor - 1)
        elif name in ("right", "ctrl-f"):
            self.cursor = min(len(self.input), self.cursor + 1)
        elif name == "ctrl-a":
            self.cursor = 0
        elif name == "ctrl-e":
            self.cursor = len(self.input)
        elif name in ("up", "ctrl-p"):
            self.move(-1)
        elif name in ("down", "ctrl-n"):
            self.move(1)
        elif name == "pageup":
            self.move(-self.height)
        elif name == "pagedown":
            self.move(self.height)
        elif name == "home":
            self.move(-len(self.items))
        elif name == "end":
            self.move(len(self.items))
        else:
            return False
        self.render()
        return False

    def render(self):
        tty = self.tty
        width = tty.size.width or 80
        tty.cursor_restore()
        tty.write("\x1b[00m")
        tty.erase_down()
        # input line
        tty.write(f"\x1b[01m{self.prompt}\x1b[00m{printable(self.text)}")
        counter = f" {len(self.items)}"
        tty.cursor_to_column(max(0, width - len(counter)))
        tty.write(counter)
        # candidates
        for row in range(self.height):
            tty.write("\r\n")
            index = self.offset + row
            if index >= len(self.items):
                continue
            line = printable(str(self.items[index]))[: max(0, width - 3)]
            if index == self.index:
                tty.write(f"\x1b[07m > {line}\x1b[00m")
            else:
                tty.write(f"   {line}")
        tty.cursor_restore()
        tty.cursor_to_column(len(self.prompt) + self.cursor)
        tty.flush()


async def select(prompt, source, predicate=None, initial=None, *, height=None, tty=None):
    """Show text UI to select one candidate of `source`

    Returns selected candidate, or typed text if nothing matches it.
    Raises `SelectCancelled` if user aborts the selection.
    """
    with ExitStack() as stack:
        tty = tty or stack.enter_context(TTY())
        selector = stack.enter_context(
            Selector(tty, prompt, source, predicate, initial, height=height)
        )
        async for event in tty:
            if selector(event):
                return selector.result
    raise SelectCancelled("tty has been closed")


def refresh_active():
    """Redisplay candidates of the active selector, input is left untouched"""
    selector = Selector.active
    if selector is not None:
        selector.refresh()


# ------------------------------------------------------------------------------
# Async select
# ------------------------------------------------------------------------------
Config = namedtuple(
    "Config",
    ("select", "refresh", "refresh_delay", "metadata"),
    defaults=(select, refresh_active, REFRESH_DELAY, completion_metadata),
)
Config.__doc__ = """Async selection configuration

- select - delegate selection function `(prompt, source, predicate, *extra)`
- refresh - action invoked periodically during async session, `None` disables
- refresh_delay - seconds between refresh actions
- metadata - metadata probe `(text, source, predicate)`
"""


class AsyncSelect:
    """Selection function which runs producers of async sources

    Drop-in replacement for the delegate selection function. Sources
    without `async` metadata are passed to the delegate as is. For async
    sources the program is spawned, its output is collected into a buffer
    reachable through the predicate, and everything is torn down once the
    delegate returns, fails or is cancelled.
    """

    __slots__ = ("config",)

    def __init__(self, config=None):
        config = config or Config()
        if config.refresh_delay <= 0:
            raise ValueError(f"refresh delay must be positive: {config.refresh_delay}")
        self.config = config

    async def __call__(self, prompt, source, predicate=None, *extra, **options):
        config = self.config
        metadata = config.metadata("", source, predicate) or {}
        command = metadata.get("async")
        if not command:
            return await config.select(prompt, source, predicate, *extra, **options)

        program, *args = command
        loop = asyncio.get_running_loop()
        with ExitStack() as stack:
            buffer = stack.enter_context(OutputBuffer())
            stack.enter_context(ProcessHandle(program, args, buffer, loop=loop))
            if config.refresh:
                stack.enter_context(
                    RefreshTicker(config.refresh, config.refresh_delay, loop=loop)
                )
            channel = QueryChannel(buffer, predicate)
            return await config.select(prompt, source, channel, *extra, **options)


async def async_select(prompt, source, predicate=None, *extra, config=None, **options):
    return await AsyncSelect(config)(prompt, source, predicate, *extra, **options)


_select_active = None


def install(config=None):
    """Make async selection the implementation of `completing_select`

    Returns previously installed selection function (`None` for default).
    """
    global _select_active
    if config is not None and config.select is completing_select:
        raise ValueError("delegate of async select can not be completing_select")
    previous, _select_active = _select_active, AsyncSelect(config)
    return previous


def uninstall():
    global _select_active
    _select_active = None


async def completing_select(prompt, source, predicate=None, *extra, **options):
    """Select candidate with the installed selection function"""
    select_fn = select if _select_active is None else _select_active
    return await select_fn(prompt, source, predicate, *extra, **options)


# ------------------------------------------------------------------------------
# Entry Point
# ------------------------------------------------------------------------------
def main_options(argv=None):
    import argparse
    import textwrap

    def parse_scorer(argument):
        scorer = SCORERS.get(argument)
        if scorer is None:
            raise argparse.ArgumentTypeError(
                f'invalid scorer: {argument} (allowed [{",".join(SCORERS.keys())}])'
            )
        return scorer

    def parse_height(argument):
        try:
            height = int(argument)
            if height <= 0:
                raise ValueError()
            return height
        except ValueError:
            raise argparse.ArgumentTypeError(
                f"height must be a positive integer: {argument}"
            )

    def parse_delay(argument):
        try:
            delay = float(argument)
            if delay <= 0:
                raise ValueError()
            return delay
        except ValueError:
            raise argparse.ArgumentTypeError(
                f"refresh delay must be a positive number: {argument}"
            )

    parser = argparse.ArgumentParser(
        description=textwrap.dedent(
            """\
    Select one line printed by PROGRAM, lines show up as soon as it prints them.
    Without PROGRAM lines are read from stdin.
    """
        )
    )
    parser.add_argument("-p", "--prompt", default="> ", help="override prompt string")
    parser.add_argument("--height", type=parse_height, help="height of the list shown")
    parser.add_argument(
        "--scorer",
        type=parse_scorer,
        default=SCORERS.get(SCORER_DEFAULT),
        help="scorer to rank candidates",
    )
    parser.add_argument(
        "--refresh-delay",
        type=parse_delay,
        default=REFRESH_DELAY,
        help="seconds between redisplays while program is running",
    )
    parser.add_argument(
        "--no-refresh", action="store_true", help="do not redisplay while idle"
    )
    parser.add_argument("--tty-device", help="tty device file (useful for debugging)")
    parser.add_argument("--debug", action="store_true", help="enable debugging")
    parser.add_argument("--log-file", help="write debug log to file")
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        metavar="PROGRAM [ARGS]",
        help="program printing candidates, one per line",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    options = main_options(argv)
    command = options.command
    if command and command[0] == "--":
        command = command[1:]

    if options.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            filename=options.log_file,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if command:
        source = lines_from_process(*command, scorer=options.scorer)
    elif sys.stdin.isatty():
        sys.stderr.write("candidates are expected on stdin or from PROGRAM\n")
        sys.exit(2)
    else:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="backslashreplace")
        text = decoder.decode(sys.stdin.buffer.read(), True)
        source = StaticSource(split_lines(text), scorer=options.scorer)

    async def tty_select(prompt, source, predicate=None, *extra):
        with TTY(file=options.tty_device) as tty:
            return await select(
                prompt, source, predicate, *extra, height=options.height, tty=tty
            )

    config = Config(
        select=tty_select,
        refresh=None if options.no_refresh else refresh_active,
        refresh_delay=options.refresh_delay,
    )

    # `kqueue` does not support tty, fallback to `select`
    if sys.platform in ("darwin",):
        import selectors

        loop = asyncio.SelectorEventLoop(selectors.SelectSelector())
    else:
        loop = asyncio.new_event_loop()
    if options.debug:
        loop.set_debug(True)
    asyncio.set_event_loop(loop)

    task = loop.create_task(AsyncSelect(config)(options.prompt, source))
    try:
        selected = loop.run_until_complete(task)
    except SelectCancelled:
        sys.stderr.write("interrupted by user\n")
        sys.exit(1)
    except BaseException:
        # interrupt escaped the loop while session is suspended, unwind it
        task.cancel()
        loop.run_until_complete(asyncio.gather(task, return_exceptions=True))
        raise
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()
    print(selected)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.stderr.write("interrupted by user\n")
        sys.exit(1)
