import asyncio

import pytest

from book import Book
from chatbot import (
    ACCESS_QUESTION,
    BORROW_QUESTION,
    ERROR_REPLY,
    LibraryChatbot,
    filter_inappropriate,
    is_uuid,
    parse_command,
)
from llm_service import LLMServiceError, RateLimitExceeded
from resources import Resource


class FakeLLM:
    """Stands in for LLMService; records calls and returns canned answers."""

    def __init__(self, reply="", similar=None, recommendations=None, fail=False):
        self.reply = reply
        self.similar = similar or []
        self.recommendations = recommendations or []
        self.fail = fail
        self.calls = []

    async def chat(self, history, message, system_prompt=None, **options):
        self.calls.append(("chat", history, message, system_prompt, options))
        if self.fail:
            raise RateLimitExceeded("slow down")
        return self.reply

    async def generate_book_summary(self, title):
        return f"A summary of {title}."

    async def generate_resource_summary(self, title):
        if self.fail:
            raise LLMServiceError("down")
        return f"Resource summary of {title}."

    async def find_similar_titles(self, title, candidates, kind="book", title_key="title"):
        self.calls.append(("similar", title, kind))
        return self.similar

    async def generate_book_recommendations(self, borrowed, top_books):
        if self.fail:
            raise LLMServiceError("down")
        return self.recommendations


def ask(lib, llm, message="hello", user_id=None):
    bot = LibraryChatbot(lib, llm)
    return asyncio.run(bot.respond(message, [], user_id))


# ------------------------- Parsing ------------------------- #
def test_parse_command_follows_dispatch_order():
    cmd = parse_command("[BOOK_DETAILS:Dune] and [BOOK_SEARCH: space ]")
    assert cmd.name == "BOOK_SEARCH"
    assert cmd.argument == "space"

    cmd = parse_command("[BOOK_RECOMMENDATIONS_BY_TOPIC:history]")
    assert (cmd.name, cmd.argument) == ("BOOK_RECOMMENDATIONS_BY_TOPIC", "history")

    cmd = parse_command("Sure! [BOOK_RECOMMENDATIONS]")
    assert (cmd.name, cmd.argument) == ("BOOK_RECOMMENDATIONS", None)

    assert parse_command("Just chatting") is None
    assert parse_command("") is None


def test_unclosed_command_stops_dispatch():
    assert parse_command("[RESOURCE_SEARCH:notes] and [BOOK_SEARCH:dune") is None
    assert parse_command("[BOOK_SUMMARY:Emma") is None


def test_filter_inappropriate_and_uuid():
    items = [{"name": "Test PDF"}, {"name": "Networks"}, {"name": "Admin guide"}]
    assert filter_inappropriate(items) == [{"name": "Networks"}]
    assert is_uuid("123e4567-e89b-12d3-a456-426614174000")
    assert not is_uuid("Dune")


# ------------------------- Turns ------------------------- #
def test_plain_reply_passes_through(lib):
    llm = FakeLLM(reply="Loans last 14 days.")
    reply = ask(lib, llm, "How long can I keep a book?")
    assert reply.to_dict() == {"reply": "Loans last 14 days.", "command": None}

    _, history, message, system_prompt, options = llm.calls[0]
    assert message == "How long can I keep a book?"
    assert "LibraLink" in system_prompt
    assert "up to 2 times" in system_prompt
    assert set(options) == {"provider", "model"}


def test_empty_message_rejected(lib):
    with pytest.raises(ValueError):
        ask(lib, FakeLLM(), "   ")


def test_llm_failure_returns_apology(lib):
    reply = ask(lib, FakeLLM(fail=True))
    assert reply.text == ERROR_REPLY
    assert reply.command is None


def test_book_search_lists_availability(lib):
    dune = lib.add_book(Book("Dune", "Frank Herbert", description="Desert planet"))
    lib.add_book(Book("Dune Messiah", "Frank Herbert"))
    lib.issue_book("u1", dune.id)

    reply = ask(lib, FakeLLM(reply="[BOOK_SEARCH:dune]"))

    assert reply.command == "BOOK_SEARCH"
    assert reply.text.startswith('I found 2 book(s) related to "dune":')
    assert f"1. **[Dune](/book/{dune.id})** by Frank Herbert" in reply.text
    assert "❌ Currently borrowed" in reply.text
    assert "✅ Available" in reply.text
    assert reply.text.endswith(BORROW_QUESTION)


def test_book_search_without_results(lib):
    reply = ask(lib, FakeLLM(reply="[BOOK_SEARCH:quantum]"))
    assert reply.text.startswith('I couldn\'t find any books related to "quantum"')


def test_book_summary(lib):
    reply = ask(lib, FakeLLM(reply="[BOOK_SUMMARY:Dune]"))
    assert reply.text == 'Here\'s a summary of "Dune":\n\nA summary of Dune.'


def test_topic_recommendations_only_available_books(lib):
    dune = lib.add_book(Book("Dune", description="space"))
    lib.add_book(Book("Foundation", description="space empire"))
    lib.issue_book("u1", dune.id)

    reply = ask(lib, FakeLLM(reply="[BOOK_RECOMMENDATIONS_BY_TOPIC:space]"))
    assert "Foundation" in reply.text
    assert "[Dune]" not in reply.text


def test_similar_books_keeps_available_matches(lib):
    lib.add_book(Book("Emma", "Jane Austen"))
    persuasion = lib.add_book(Book("Persuasion", "Jane Austen"))
    lib.issue_book("u1", persuasion.id)

    llm = FakeLLM(reply="[BOOK_SIMILAR:Pride and Prejudice]", similar=["Emma", "Persuasion", "Not In Library"])
    reply = ask(lib, llm)
    assert reply.text.startswith('Here are some books similar to "Pride and Prejudice"')
    assert "Emma" in reply.text
    assert "Persuasion" not in reply.text


def test_recommendations_without_user_or_history(lib):
    lib.add_book(Book("Dune"))
    reply = ask(lib, FakeLLM(reply="[BOOK_RECOMMENDATIONS]"))
    assert reply.text.startswith("I'd be happy to recommend some books!")

    reply = ask(lib, FakeLLM(reply="[BOOK_RECOMMENDATIONS]"), user_id="new-reader")
    assert "**Dune**" in reply.text
    assert "Popular book in our library collection" in reply.text


def test_recommendations_from_history_fall_back_on_error(lib):
    dune = lib.add_book(Book("Dune"))
    lib.add_book(Book("Hyperion"))
    lib.issue_book("u1", dune.id)

    recs = [{"title": "Hyperion", "author": "Dan Simmons", "reason": "More space", "relevanceScore": 9}]
    reply = ask(lib, FakeLLM(reply="[BOOK_RECOMMENDATIONS]", recommendations=recs), user_id="u1")
    assert "1. **Hyperion** by Dan Simmons" in reply.text
    assert "*Relevance:* 9/10" in reply.text

    bot = LibraryChatbot(lib, FakeLLM(fail=True))
    fallback = asyncio.run(bot.recommend_books("u1"))
    assert {r["reason"] for r in fallback} == {"Popular book in our library collection"}


def test_book_details_by_title_and_uuid(lib):
    dune = lib.add_book(Book("Dune", "Frank Herbert"))

    reply = ask(lib, FakeLLM(reply="[BOOK_DETAILS:dune]"))
    assert reply.text == f'Here\'s the details for "Dune" by Frank Herbert. [View Book Details](/book/{dune.id})'

    reply = ask(lib, FakeLLM(reply=f"[BOOK_DETAILS:{dune.id}]"))
    assert f"(/book/{dune.id})" in reply.text

    reply = ask(lib, FakeLLM(reply="[BOOK_DETAILS:Unknown Title]"))
    assert reply.text.startswith("I couldn't find a book with that title.")


# ------------------------- Resources ------------------------- #
def test_resource_search_filters_internal_titles(lib):
    notes = lib.add_resource(Resource("Networking Notes", author="Tanenbaum"))
    lib.add_resource(Resource("Networking test upload"))

    reply = ask(lib, FakeLLM(reply="[RESOURCE_SEARCH:networking]"))
    assert f"1. **[Networking Notes](/resource/{notes.id})** by Tanenbaum" in reply.text
    assert "test upload" not in reply.text
    assert reply.text.endswith(ACCESS_QUESTION)


def test_resource_details_and_summary(lib):
    notes = lib.add_resource(Resource("Networking Notes"))

    reply = ask(lib, FakeLLM(reply="[RESOURCE_DETAILS:networking]"))
    assert f"[View Resource Details](/resource/{notes.id})" in reply.text

    reply = ask(lib, FakeLLM(reply="[RESOURCE_SUMMARY:Networking Notes]"))
    assert reply.text == "Resource summary of Networking Notes."


def test_resource_recommendations_and_similar(lib):
    lib.add_resource(Resource("Networking Notes"))
    lib.add_resource(Resource("Compiler Design"))

    reply = ask(lib, FakeLLM(reply="[RESOURCE_RECOMMENDATIONS]"))
    assert reply.text.startswith("Here are some recommended resources")
    assert "*Relevance:* 7/10" in reply.text

    reply = ask(lib, FakeLLM(reply="[RESOURCE_SIMILAR:Computer Networks]", similar=["Networking Notes"]))
    assert "Networking Notes" in reply.text
    assert "Compiler Design" not in reply.text

    reply = ask(lib, FakeLLM(reply="[RESOURCE_SIMILAR:Cooking]", similar=[]))
    assert reply.text.startswith('I couldn\'t find any similar resources to "Cooking"')


def test_unclosed_command_leaves_reply_unchanged(lib):
    text = "Here you go [RESOURCE_RECOMMENDATIONS] [BOOK_DETAILS:Dune"
    reply = ask(lib, FakeLLM(reply=text), "Tell me about Dune")
    assert reply.to_dict() == {"reply": text, "command": None}
