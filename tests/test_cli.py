from __future__ import annotations

import argparse
from typing import Dict, List, Optional

import cli
from ragstream.stream_parser import ERROR_PREFIX, ParserState


class StubChatPipeline:
    def __init__(self, replies: List[ParserState]) -> None:
        self.replies = replies
        self.seen: List[List[Dict[str, str]]] = []

    def chat(self, messages, model: Optional[str] = None, on_update=None) -> ParserState:
        self.seen.append([dict(message) for message in messages])
        return self.replies.pop(0)


def _args(**overrides) -> argparse.Namespace:
    args = cli.build_arg_parser().parse_args(["chat", "--no-rag"])
    for key, value in overrides.items():
        setattr(args, key, value)
    return args


def _reply(answer: str, role: str = "assistant") -> ParserState:
    return ParserState(answer_buffer=answer, think_buffer="...", role=role, finished=True, thinking_complete=True)


def test_chat_keeps_running_history() -> None:
    pipeline = StubChatPipeline([_reply("Hello Ana."), _reply("Your name is Ana.")])
    history: List[cli.ChatMessage] = []

    history.append(cli.ChatMessage(role="user", content="Hi, I am Ana."))
    assert cli._chat_once(pipeline, history, _args()) == 0
    history.append(cli.ChatMessage(role="user", content="What is my name?"))
    assert cli._chat_once(pipeline, history, _args()) == 0

    assert pipeline.seen[1] == [
        {"role": "user", "content": "Hi, I am Ana."},
        {"role": "assistant", "content": "Hello Ana."},
        {"role": "user", "content": "What is my name?"},
    ]
    assert history[-1] == {"role": "assistant", "content": "Your name is Ana."}


def test_failed_chat_turn_is_dropped_from_history() -> None:
    pipeline = StubChatPipeline([_reply(ERROR_PREFIX + "Generation server error", role="error")])
    history = [cli.ChatMessage(role="user", content="Hi")]

    assert cli._chat_once(pipeline, history, _args()) == 1
    assert history == []


def test_ask_without_pipeline_or_server_fails_cleanly(capsys) -> None:
    args = cli.build_arg_parser().parse_args(["ask", "What?"])

    assert cli._ask_once(None, "What?", args) == 2
    assert "--server" in capsys.readouterr().err


def test_chat_parser_accepts_plain_chat_options() -> None:
    args = cli.build_arg_parser().parse_args(["chat", "--no-rag", "--model", "qwen2.5:7b"])

    assert args.no_rag is True
    assert args.model == "qwen2.5:7b"
