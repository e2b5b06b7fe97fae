"""Library assistant: asks the LLM, then expands bracketed commands in its reply
into catalogue answers."""

import logging
import re
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from config import settings
from llm_service import LLMService, LLMServiceError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful AI assistant for LibraLink, a comprehensive library management system. Your role is to assist users with:

- Finding and recommending books based on their interests, genres, or authors
- Explaining library policies, rules, and procedures
- Helping with book searches and availability
- Providing information about library services and features
- Answering questions about book borrowing, returning, and renewal processes
- Offering reading suggestions and literary advice
- Assisting with general library navigation and usage

SPECIAL COMMANDS YOU CAN HANDLE:
1. BOOK SEARCH: When users ask to "find books about [topic]" or "search for [book name]", respond with a special command format: [BOOK_SEARCH:topic]
2. BOOK SUMMARY: When users ask to "summarize [book title]" or "give me a summary of [book]", respond with: [BOOK_SUMMARY:book_title]
3. BOOK RECOMMENDATIONS: When users ask for "recommendations" or "suggest books" without a specific topic, respond with: [BOOK_RECOMMENDATIONS]
4. TOPIC RECOMMENDATIONS: When users ask for "recommend books on [topic]" or "suggest books about [subject]", respond with: [BOOK_RECOMMENDATIONS_BY_TOPIC:topic]
5. SIMILAR BOOKS: When users ask for "books similar to [book title]" or "recommend similar books", respond with: [BOOK_SIMILAR:book_title]
6. BOOK DETAILS: When users ask for details about a specific book or want to borrow/view a book, respond with: [BOOK_DETAILS:book_title_or_id] where you can use either the book title or the book UUID. The system will handle finding the correct book.
7. RESOURCE SEARCH: When users ask to "find resources about [topic]" or "search for [resource name]" or "find PDFs about [topic]", respond with: [RESOURCE_SEARCH:topic]
8. RESOURCE SUMMARY: When users ask to "summarize [resource title]" or "give me a summary of [resource]", respond with: [RESOURCE_SUMMARY:resource_title]
9. RESOURCE RECOMMENDATIONS: When users ask for "resource recommendations" or "suggest resources" without a specific topic, respond with: [RESOURCE_RECOMMENDATIONS]
10. RESOURCE TOPIC RECOMMENDATIONS: When users ask for "recommend resources on [topic]" or "suggest resources about [subject]", respond with: [RESOURCE_RECOMMENDATIONS_BY_TOPIC:topic]
11. SIMILAR RESOURCES: When users ask for "resources similar to [resource title]" or "recommend similar resources", respond with: [RESOURCE_SIMILAR:resource_title]
12. RESOURCE DETAILS: When users ask for details about a specific resource or want to read/view a resource, respond with: [RESOURCE_DETAILS:resource_title_or_id] where you can use either the resource title or the resource UUID. The system will handle finding the correct resource.

LIBRARY PROCESSES AND INSTRUCTIONS:
When users ask about borrowing books:
- Books are issued instantly with automated tracking
- Users can view their borrowed books and due dates in "My Transactions"
- Loans last {loan_days} days and real-time availability is shown for every book

When users ask about renewing books:
- Renewal can be done with one click from the book details page
- Users can renew a book up to {max_renewals} times
- After {max_renewals} renewals, the book must be returned
- Due dates are automatically extended upon renewal
- Overdue books are charged {currency}{late_fee} per day

When users ask about returning books:
- Books are returned through the library system
- Users will be prompted to rate the book after returning
- Returned books become available for other users immediately

When users ask about reading books:
- For physical books: Users must borrow the book first, then can read it during the borrowing period
- For digital resources (PDFs): Available in the Resources section with options to "Read Online" or "Read as Flipbook"
- Digital resources can be accessed without borrowing

Always be friendly, helpful, and knowledgeable about library operations. If you don't know something specific about the library's current inventory or policies, acknowledge this and suggest asking a librarian for the most up-to-date information.

CONTENT FILTERING RULES:
- NEVER recommend or display books/resources with titles containing words like: "test", "demo", "sample", "example", "my transactions", "admin", "system", "debug", "placeholder", "temporary", or similar internal/testing terms
- Only recommend legitimate, user-appropriate books and resources from the actual library collection
- If a search returns only filtered results, inform the user that no appropriate materials were found and suggest alternative search terms"""

# Checked in this order; the first command found in a reply wins.
COMMAND_ORDER = (
    "BOOK_SEARCH",
    "BOOK_SUMMARY",
    "BOOK_SIMILAR",
    "BOOK_RECOMMENDATIONS_BY_TOPIC",
    "BOOK_RECOMMENDATIONS",
    "BOOK_DETAILS",
    "RESOURCE_SEARCH",
    "RESOURCE_DETAILS",
    "RESOURCE_SUMMARY",
    "RESOURCE_RECOMMENDATIONS_BY_TOPIC",
    "RESOURCE_RECOMMENDATIONS",
    "RESOURCE_SIMILAR",
)

NO_ARGUMENT_COMMANDS = ("BOOK_RECOMMENDATIONS", "RESOURCE_RECOMMENDATIONS")

_COMMAND_PATTERNS = {
    name: re.compile(rf"\[{name}\]" if name in NO_ARGUMENT_COMMANDS else rf"\[{name}:(.*?)\]")
    for name in COMMAND_ORDER
}

INAPPROPRIATE_KEYWORDS = (
    "test", "demo", "sample", "example", "my transactions",
    "admin", "system", "debug", "placeholder", "temporary",
    "flipbook demo", "mytransactions",
)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

ERROR_REPLY = "Sorry, I encountered an error. Please try again later."
BORROW_QUESTION = "Would you like me to help you borrow any of these books?"
ACCESS_QUESTION = "Would you like me to help you access any of these resources?"


@dataclass
class ChatCommand:
    name: str
    argument: Optional[str] = None


@dataclass
class ChatReply:
    text: str
    command: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"reply": self.text, "command": self.command}


def parse_command(text: str) -> Optional[ChatCommand]:
    """Find the first special command in an LLM reply, in dispatch order."""
    if not text:
        return None
    for name in COMMAND_ORDER:
        prefix = f"[{name}]" if name in NO_ARGUMENT_COMMANDS else f"[{name}:"
        if prefix not in text:
            continue
        # The first command opened in the reply decides; a malformed one yields no command
        match = _COMMAND_PATTERNS[name].search(text)
        if not match:
            return None
        argument = match.group(1).strip() if match.groups() else None
        return ChatCommand(name=name, argument=argument)
    return None


def filter_inappropriate(items: List[Dict[str, Any]], key: str = "name") -> List[Dict[str, Any]]:
    """Drop items whose title contains an internal or testing keyword."""
    def allowed(item: Dict[str, Any]) -> bool:
        title = (item.get(key) or "").lower()
        return not any(keyword in title for keyword in INAPPROPRIATE_KEYWORDS)
    return [item for item in items if allowed(item)]


def is_uuid(value: str) -> bool:
    return bool(_UUID_RE.match((value or "").strip()))


def _snippet(description: Optional[str]) -> str:
    return description[:100] + "..." if description else "No description available"


def _book_line(index: int, book: Dict[str, Any], with_status: bool = False) -> str:
    line = f"{index}. **[{book['title']}](/book/{book['id']})** by {book.get('author') or 'Unknown'}"
    if with_status:
        line += f"\n   {'✅ Available' if book.get('available') else '❌ Currently borrowed'}"
    return line + f"\n   {_snippet(book.get('description'))}"


def _resource_line(index: int, resource: Dict[str, Any]) -> str:
    return (f"{index}. **[{resource['name']}](/resource/{resource['id']})** by "
            f"{resource.get('author') or 'Unknown'}\n   {_snippet(resource.get('description'))}")


def _numbered(lines: List[str]) -> str:
    return "\n\n".join(lines)


class LibraryChatbot:
    """Runs one chat turn: LLM reply first, then command expansion against the library."""

    def __init__(self, library, llm: Optional[LLMService] = None):
        self.library = library
        self.llm = llm or LLMService()
        self._handlers = {
            "BOOK_SEARCH": self._book_search,
            "BOOK_SUMMARY": self._book_summary,
            "BOOK_SIMILAR": self._book_similar,
            "BOOK_RECOMMENDATIONS_BY_TOPIC": self._book_topic_recommendations,
            "BOOK_RECOMMENDATIONS": self._book_recommendations,
            "BOOK_DETAILS": self._book_details,
            "RESOURCE_SEARCH": self._resource_search,
            "RESOURCE_DETAILS": self._resource_details,
            "RESOURCE_SUMMARY": self._resource_summary,
            "RESOURCE_RECOMMENDATIONS_BY_TOPIC": self._resource_topic_recommendations,
            "RESOURCE_RECOMMENDATIONS": self._resource_recommendations,
            "RESOURCE_SIMILAR": self._resource_similar,
        }

    @staticmethod
    def system_prompt() -> str:
        return SYSTEM_PROMPT.format(
            loan_days=settings.loan_period_days,
            max_renewals=settings.max_renewals,
            currency=settings.currency_symbol,
            late_fee=settings.late_fee_per_day,
        )

    async def respond(self, message: str, history: Optional[List[Dict[str, str]]] = None,
                      user_id: Optional[str] = None) -> ChatReply:
        if not message or not message.strip():
            raise ValueError("Message cannot be empty.")
        try:
            text = await self.llm.chat(
                history or [],
                message.strip(),
                system_prompt=self.system_prompt(),
                provider=settings.llm_chat_provider,
                model=settings.llm_chat_model,
            )
        except LLMServiceError as e:
            logger.error(f"Chat completion failed: {e}")
            return ChatReply(text=ERROR_REPLY)

        command = parse_command(text)
        if command is None:
            return ChatReply(text=text)

        logger.info(f"Dispatching chat command {command.name}")
        handler = self._handlers[command.name]
        if command.name in NO_ARGUMENT_COMMANDS:
            reply = await handler(user_id)
        else:
            reply = await handler(command.argument or "")
        return ChatReply(text=reply, command=command.name)

    # ------------------------- Books ------------------------- #
    def _search_books(self, query: str) -> List[Dict[str, Any]]:
        return self.library.list_books_with_status(self.library.search_books(query, limit=10))

    async def _book_search(self, query: str) -> str:
        results = self._search_books(query)
        if not results:
            return (f'I couldn\'t find any books related to "{query}" in our library. Would you like me to '
                    f'suggest some similar topics or help you search for something else?')
        lines = [_book_line(i, book, with_status=True) for i, book in enumerate(results, 1)]
        return f'I found {len(results)} book(s) related to "{query}":\n\n{_numbered(lines)}\n\n{BORROW_QUESTION}'

    async def _book_summary(self, title: str) -> str:
        try:
            summary = await self.llm.generate_book_summary(title)
        except LLMServiceError as e:
            logger.warning(f"Book summary failed for {title!r}: {e}")
            summary = "Sorry, I couldn't generate a summary for this book right now."
        return f'Here\'s a summary of "{title}":\n\n{summary}'

    async def _book_similar(self, title: str) -> str:
        similar = await self._find_similar_books(title)
        if not similar:
            return (f'I\'m sorry, but there are no similar books currently available to "{title}" in our '
                    f'library. Would you like me to search for a different topic or help you find books in a '
                    f'related area?')
        lines = [_book_line(i, book) for i, book in enumerate(similar, 1)]
        return (f'Here are some books similar to "{title}" that are currently available:\n\n'
                f'{_numbered(lines)}\n\n{BORROW_QUESTION}')

    async def _find_similar_books(self, title: str) -> List[Dict[str, Any]]:
        books = self.library.list_books_with_status()
        if not books:
            return []
        try:
            titles = await self.llm.find_similar_titles(title, books[:50], kind="book")
        except LLMServiceError as e:
            logger.warning(f"Similar books lookup failed for {title!r}: {e}")
            return []
        by_title = {b["title"]: b for b in books}
        matches = [by_title[t] for t in titles if t in by_title][:5]
        return [b for b in matches if b["available"]]

    async def _book_topic_recommendations(self, topic: str) -> str:
        available = [b for b in self._search_books(topic) if b["available"]][:5]
        if not available:
            return (f'I\'m sorry, but there are no books currently available on "{topic}" in our library. '
                    f'Would you like me to search for a different topic or help you find books in a related area?')
        lines = [_book_line(i, book) for i, book in enumerate(available, 1)]
        return f'Here are some available books on "{topic}" that I recommend:\n\n{_numbered(lines)}\n\n{BORROW_QUESTION}'

    async def recommend_books(self, user_id: Optional[str]) -> List[Dict[str, Any]]:
        """History-based recommendations, or popular books when there is no history."""
        top_books = [b.to_dict() for b in self.library.get_top_books(limit=50)]
        popular = [
            {
                "title": b["title"],
                "author": b.get("author") or "Unknown",
                "reason": "Popular book in our library collection",
                "relevanceScore": 7,
            }
            for b in top_books[:5]
        ]
        if not user_id:
            return []
        borrowed = [b.to_dict() for b in self.library.get_recent_issued_books(user_id, limit=5)]
        if not borrowed:
            return popular
        try:
            return await self.llm.generate_book_recommendations(borrowed, top_books)
        except LLMServiceError as e:
            logger.warning(f"AI recommendations failed, falling back to popular books: {e}")
            return popular

    async def _book_recommendations(self, user_id: Optional[str]) -> str:
        recommendations = await self.recommend_books(user_id)
        if not recommendations:
            return ("I'd be happy to recommend some books! Since I don't have information about your reading "
                    "preferences yet, here are some popular books from our collection. Try borrowing a few books "
                    "first, and I can give you more personalized recommendations next time!")
        lines = [
            f"{i}. **{rec['title']}** by {rec['author']}\n   *Why you'll like it:* {rec['reason']}\n"
            f"   *Relevance:* {rec['relevanceScore']}/10"
            for i, rec in enumerate(recommendations, 1)
        ]
        return f"Based on your reading history, here are some book recommendations:\n\n{_numbered(lines)}\n\n{BORROW_QUESTION}"

    async def _book_details(self, identifier: str) -> str:
        if is_uuid(identifier):
            book = self.library.find_book(identifier)
            if not book:
                return f"I found the book you're looking for. [View Book Details](/book/{identifier})"
        else:
            book = self.library.find_book_by_title(identifier)
            if not book:
                return "I couldn't find a book with that title. Try searching for books with a similar topic instead."
        return f'Here\'s the details for "{book.title}" by {book.author or "Unknown"}. [View Book Details](/book/{book.id})'

    # ------------------------- Resources ------------------------- #
    def _search_resources(self, query: str) -> List[Dict[str, Any]]:
        resources = [r.to_dict() for r in self.library.search_resources(query, limit=10)]
        return filter_inappropriate(resources, "name")

    async def _resource_search(self, topic: str) -> str:
        results = self._search_resources(topic)
        if not results:
            return (f'I\'m sorry, but there are no resources currently available on "{topic}" in our library. '
                    f'Would you like me to search for a different topic or help you find resources in a related area?')
        lines = [_resource_line(i, r) for i, r in enumerate(results, 1)]
        return f'Here are some available resources on "{topic}":\n\n{_numbered(lines)}\n\n{ACCESS_QUESTION}'

    async def _resource_details(self, identifier: str) -> str:
        if is_uuid(identifier):
            resource = self.library.find_resource(identifier)
            if not resource:
                return f"I found the resource you're looking for. [View Resource Details](/resource/{identifier})"
        else:
            resource = self.library.find_resource_by_name(identifier)
            if not resource:
                return ("I couldn't find a resource with that title. "
                        "Try searching for resources with a similar topic instead.")
        return (f'Here\'s the details for "{resource.name}" by {resource.author or "Unknown"}. '
                f'[View Resource Details](/resource/{resource.id})')

    async def _resource_summary(self, title: str) -> str:
        try:
            return await self.llm.generate_resource_summary(title)
        except LLMServiceError as e:
            logger.warning(f"Resource summary failed for {title!r}: {e}")
            return "Sorry, I couldn't generate a summary for this resource right now."

    async def _resource_topic_recommendations(self, topic: str) -> str:
        results = self._search_resources(topic)[:5]
        if not results:
            return (f'I\'m sorry, but there are no resources currently available on "{topic}" in our library. '
                    f'Would you like me to search for a different topic or help you find resources in a related area?')
        lines = [_resource_line(i, r) for i, r in enumerate(results, 1)]
        return (f'Here are some available resources on "{topic}" that I recommend:\n\n'
                f'{_numbered(lines)}\n\n{ACCESS_QUESTION}')

    async def _resource_recommendations(self, user_id: Optional[str]) -> str:
        resources = filter_inappropriate([r.to_dict() for r in self.library.list_resources()[:10]], "name")[:5]
        if not resources:
            return ("I'd be happy to recommend some resources! Here are some popular resources from our collection. "
                    "Try accessing a few resources first, and I can give you more personalized recommendations "
                    "next time!")
        lines = [
            f"{i}. **[{r['name']}](/resource/{r['id']})** by {r.get('author') or 'Unknown'}\n"
            f"   *Why you'll like it:* Popular resource in our library collection\n   *Relevance:* 7/10"
            for i, r in enumerate(resources, 1)
        ]
        return f"Here are some recommended resources from our library collection:\n\n{_numbered(lines)}\n\n{ACCESS_QUESTION}"

    async def _resource_similar(self, title: str) -> str:
        not_found = (f'I couldn\'t find any similar resources to "{title}" in our library. '
                     f'Would you like me to search for resources on a related topic instead?')
        resources = filter_inappropriate([r.to_dict() for r in self.library.list_resources()[:100]], "name")
        if not resources:
            return not_found
        try:
            titles = await self.llm.find_similar_titles(title, resources[:50], kind="resource", title_key="name")
        except LLMServiceError as e:
            logger.warning(f"Similar resources lookup failed for {title!r}: {e}")
            return not_found
        by_name = {r["name"]: r for r in resources}
        similar = [by_name[t] for t in titles if t in by_name][:5]
        if not similar:
            return not_found
        lines = [_resource_line(i, r) for i, r in enumerate(similar, 1)]
        return (f'Here are some resources similar to "{title}" that are currently available:\n\n'
                f'{_numbered(lines)}\n\n{ACCESS_QUESTION}')
