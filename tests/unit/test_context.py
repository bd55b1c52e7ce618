from chatdesk.schemas.content import ImageBlock, ImageURL, TextBlock, extract_text
from chatdesk.schemas.conversations import Message
from chatdesk.services.context import prepare_context


def _image_turn(n: int) -> Message:
    role = "user" if n % 2 else "assistant"
    return Message(
        role=role,
        content=[TextBlock(text=f"m{n}"), ImageBlock(image_url=ImageURL(url="data:image/png;base64,AAAA"))],
    )


def _text_turn(n: int) -> Message:
    return Message(role="user" if n % 2 else "assistant", content=f"m{n}")


def _has_image(msg: Message) -> bool:
    return isinstance(msg.content, list) and any(isinstance(b, ImageBlock) for b in msg.content)


class TestPrepareContext:
    def test_thirty_messages_window(self):
        """30 turns, images on 25-30: 20 kept, only the newest 5 keep images."""
        history = [_image_turn(n) if n >= 25 else _text_turn(n) for n in range(1, 31)]

        prepared = prepare_context(history, max_messages=20, max_messages_with_attachments=5)

        assert len(prepared) == 20
        assert [extract_text(m.content) for m in prepared] == [f"m{n}" for n in range(11, 31)]
        assert [_has_image(m) for m in prepared[-5:]] == [True] * 5
        assert not any(_has_image(m) for m in prepared[:15])
        # message 25 is in the window but older than the newest five
        assert prepared[14].content == "m25"

    def test_exact_counts_for_smaller_limits(self):
        history = [_image_turn(n) for n in range(1, 11)]
        prepared = prepare_context(history, max_messages=6, max_messages_with_attachments=2)
        assert len(prepared) == 6
        assert sum(_has_image(m) for m in prepared) == 2
        assert all(isinstance(m.content, str) for m in prepared[:4])

    def test_limit_larger_than_history(self):
        history = [_text_turn(1), _text_turn(2)]
        assert prepare_context(history, 20, 5) == history

    def test_zero_limit_is_empty(self):
        assert prepare_context([_text_turn(1)], 0, 5) == []

    def test_media_only_turn_kept_as_empty_string(self):
        media_only = Message(role="user", content=[ImageBlock(image_url=ImageURL(url="data:image/png;base64,A"))])
        history = [media_only, _text_turn(2), _text_turn(3)]
        prepared = prepare_context(history, 3, 1)
        assert len(prepared) == 3
        assert prepared[0].content == ""
        assert prepared[0].id == media_only.id

    def test_does_not_mutate_history(self):
        history = [_image_turn(1), _image_turn(2)]
        prepare_context(history, 2, 0)
        assert _has_image(history[0]) and _has_image(history[1])

    def test_zero_attachment_limit_strips_all(self):
        history = [_image_turn(n) for n in range(1, 4)]
        prepared = prepare_context(history, 3, 0)
        assert not any(_has_image(m) for m in prepared)
