import asyncio
import io
import os

import pytest

import asyncsel
from asyncsel import (
    KEY_MODE_ALT,
    KEY_MODE_CTRL,
    TTY,
    TTY_CHAR,
    TTY_CLOSE,
    TTY_KEY,
    TTY_SIZE,
    AsyncSelect,
    Config,
    KeyParser,
    SelectCancelled,
    Selector,
    StaticSource,
    TTYEvent,
    TTYSize,
    lines_from_process,
    prefix_scorer,
    refresh_active,
    select,
)


class FakeTTY(TTY):
    """TTY which records frames instead of writing to a device"""

    def __init__(self, events=()):
        self.size = TTYSize(24, 80)
        self.write_buffer = io.StringIO()
        self.frames = []
        self.events = asyncio.Queue()
        for event in events:
            self.events.put_nowait(event)

    def flush(self):
        self.frames.append(self.write_buffer.getvalue())
        self.write_buffer.truncate(0)
        self.write_buffer.seek(0)

    def close(self):
        self.events.put_nowait(TTYEvent(TTY_CLOSE, None))


def key(name, mode=0):
    return TTYEvent(TTY_KEY, (name, mode))


def ctrl(name):
    return key(name, KEY_MODE_CTRL)


def chars(text):
    return [TTYEvent(TTY_CHAR, char) for char in text]


FRUITS = StaticSource(["apple", "apricot", "banana", "cherry"], scorer=prefix_scorer)


# ------------------------------------------------------------------------------
# KeyParser
# ------------------------------------------------------------------------------
def test_parser_chars_and_control_keys():
    parser = KeyParser()
    assert parser(b"ab\r\t\x7f\x03") == [
        TTYEvent(TTY_CHAR, "a"),
        TTYEvent(TTY_CHAR, "b"),
        key("enter"),
        key("tab"),
        key("backspace"),
        ctrl("c"),
    ]


def test_parser_escape_sequences():
    parser = KeyParser()
    assert parser(b"\x1b[A\x1b[B\x1bOC\x1b[5~\x1b[1;5D") == [
        key("up"),
        key("down"),
        key("right"),
        key("pageup"),
        key("left"),
    ]


def test_parser_incomplete_sequence_is_kept():
    parser = KeyParser()
    assert parser(b"x\x1b[6") == [TTYEvent(TTY_CHAR, "x")]
    assert parser(b"~") == [key("pagedown")]


def test_parser_escape_alt_and_unknown():
    parser = KeyParser()
    assert parser(b"\x1b\x1b") == [key("escape")]
    assert parser.flush() == [key("escape")]
    assert parser(b"\x1bf") == [key("f", KEY_MODE_ALT)]
    assert parser(b"\x1b[99z") == []


def test_parser_lone_escape_waits_for_continuation():
    parser = KeyParser()
    assert parser(b"\x1b") == []
    assert parser(b"[A") == [key("up")]
    assert parser.flush() == []

    assert parser(b"\x1b") == []
    assert parser.flush() == [key("escape")]
    assert parser.pending == ""


def test_parser_flush_after_partial_sequence():
    parser = KeyParser()
    assert parser(b"\x1b[") == []
    assert parser.flush() == [key("escape"), TTYEvent(TTY_CHAR, "[")]


def test_tty_reports_lone_escape_after_timeout():
    async def scenario():
        master, slave = os.openpty()
        try:
            with TTY(file=slave) as device:
                os.write(master, b"\x1b")
                while True:
                    event = await asyncio.wait_for(device.events.get(), 1.0)
                    if event.type != TTY_SIZE:
                        return event
        finally:
            os.close(master)

    assert asyncio.run(scenario()) == key("escape")


def test_parser_utf8_split():
    parser = KeyParser()
    data = "é".encode()
    assert parser(data[:1]) == []
    assert parser(data[1:]) == [TTYEvent(TTY_CHAR, "é")]


# ------------------------------------------------------------------------------
# Selector
# ------------------------------------------------------------------------------
def feed(selector, events):
    for event in events:
        if selector(event):
            return True
    return False


def test_selector_filters_and_selects():
    with Selector(FakeTTY(), "> ", FRUITS) as selector:
        assert selector.items == ["apple", "apricot", "banana", "cherry"]
        feed(selector, chars("ap"))
        assert selector.text == "ap"
        assert selector.items == ["apple", "apricot"]
        assert feed(selector, [key("down"), key("enter")])
    assert selector.result == "apricot"


def test_selector_returns_text_without_match():
    with Selector(FakeTTY(), "> ", FRUITS) as selector:
        assert feed(selector, chars("zz") + [key("enter")])
    assert selector.result == "zz"


def test_selector_editing():
    with Selector(FakeTTY(), "> ", FRUITS, initial="banx") as selector:
        assert selector.cursor == 4
        feed(selector, [key("backspace")])
        assert selector.text == "ban"
        feed(selector, [ctrl("a"), key("right"), ctrl("k")])
        assert selector.text == "b"
        feed(selector, [ctrl("e")] + chars("an") + [ctrl("u")])
        assert (selector.text, selector.cursor) == ("", 0)


def test_selector_tab_completes_input():
    with Selector(FakeTTY(), "> ", FRUITS) as selector:
        feed(selector, chars("ch") + [key("tab")])
        assert selector.text == "cherry"
        assert selector.cursor == 6


def test_selector_movement_is_clamped():
    with Selector(FakeTTY(), "> ", FRUITS, height=2) as selector:
        feed(selector, [key("up")])
        assert selector.index == 0
        feed(selector, [key("pagedown"), key("pagedown"), key("pagedown")])
        assert selector.index == 3
        assert selector.offset == 2
        feed(selector, [key("home")])
        assert (selector.index, selector.offset) == (0, 0)


def test_selector_cancel():
    with pytest.raises(SelectCancelled):
        with Selector(FakeTTY(), "> ", FRUITS) as selector:
            feed(selector, [ctrl("g")])


def test_selector_active_is_restored():
    assert Selector.active is None
    with Selector(FakeTTY(), "> ", FRUITS) as outer:
        assert Selector.active is outer
        with Selector(FakeTTY(), "> ", FRUITS) as inner:
            assert Selector.active is inner
        assert Selector.active is outer
    assert Selector.active is None


def test_refresh_keeps_input_and_selection():
    items = ["one", "two"]

    def table(text, predicate, action):
        return asyncsel.complete_with_action(action, list(items), text, predicate)

    tty = FakeTTY()
    with Selector(tty, "> ", table) as selector:
        feed(selector, chars("o") + [key("down"), key("left")])
        state = (selector.text, selector.cursor, selector.index)
        frames = len(tty.frames)
        items.append("four")
        refresh_active()
        assert (selector.text, selector.cursor, selector.index) == state
        assert "four" in selector.items
        assert len(tty.frames) == frames + 1


def test_render_shows_prompt_and_candidates():
    tty = FakeTTY()
    with Selector(tty, "Pick: ", FRUITS):
        pass
    frame = tty.frames[0]
    assert "Pick: " in frame
    assert " > apple" in frame
    assert "cherry" in frame


def test_resize_event_renders():
    tty = FakeTTY()
    with Selector(tty, "> ", FRUITS) as selector:
        frames = len(tty.frames)
        assert not selector(TTYEvent(TTY_SIZE, TTYSize(10, 40)))
        assert len(tty.frames) == frames + 1


# ------------------------------------------------------------------------------
# select
# ------------------------------------------------------------------------------
def test_select_coroutine():
    async def scenario():
        tty = FakeTTY(chars("ban") + [key("enter")])
        return await select("> ", FRUITS, tty=tty)

    assert asyncio.run(scenario()) == "banana"


def test_select_closed_tty_cancels():
    async def scenario():
        tty = FakeTTY([TTYEvent(TTY_CLOSE, None)])
        return await select("> ", FRUITS, tty=tty)

    with pytest.raises(SelectCancelled):
        asyncio.run(scenario())


def test_select_lines_from_process():
    async def scenario():
        tty = FakeTTY([key("down"), key("enter")])

        async def tty_select(prompt, source, predicate=None, *extra):
            await predicate.output_buffer().drained()
            return await select(prompt, source, predicate, *extra, tty=tty)

        source = lines_from_process("printf", "x\ny\nz\n")
        result = await AsyncSelect(Config(select=tty_select))("Pick: ", source)
        return result, tty

    result, tty = asyncio.run(scenario())
    assert result == "y"
    assert "z" in tty.frames[0]
