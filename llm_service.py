import base64
import json
import logging
import re
import time
from typing import Optional, Dict, Any, List

import httpx

from config import settings
from database import get_db_connection
from http_client import PooledHTTPClient, get_http_client

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


# All providers expose an OpenAI-compatible chat/completions endpoint.
LLM_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "A4F": {
        "base_url": "https://api.a4f.co/v1",
        "api_key_setting": "a4f_api_key",
        "models": {
            "GROK_4": "provider-5/grok-4-0709",
            "LLAMA_3_2": "provider-6/llama-3.2-3b-instruct",
            "GPT_4O_MINI": "provider-7/gpt-4o-mini",
            "CLAUDE_3_5_SONNET": "provider-8/claude-3-5-sonnet-20241022",
        },
    },
    "GEMINI": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "api_key_setting": "gemini_api_key",
        "models": {
            "PRO_2_5": "gemini-2.5-pro",
            "FLASH_2_5": "gemini-2.5-flash",
            "FLASH_LITE_2_5": "gemini-2.5-flash-lite",
            "FLASH_2_0": "gemini-2.0-flash",
        },
    },
    "GROQ": {
        "base_url": "https://api.groq.com/openai/v1",
        "api_key_setting": "groq_api_key",
        "models": {
            "LLAMA_3_1_70B": "llama-3.1-70b-versatile",
            "LLAMA_3_1_8B": "llama-3.1-8b-instant",
            "MIXTRAL_8x7B": "mixtral-8x7b-32768",
            "KIMI_K2": "moonshotai/kimi-k2-instruct-0905",
            "LLAMA_4_MAVERICK": "meta-llama/llama-4-maverick-17b-128e-instruct",
            "GPT_OSS_120B": "openai/gpt-oss-120b",
            "GPT_OSS_20B": "openai/gpt-oss-20b",
        },
    },
    "OPENROUTER": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_setting": "openrouter_api_key",
        "models": {
            "GPT_4O": "openai/gpt-4o",
            "GPT_4O_MINI": "openai/gpt-4o-mini",
            "CLAUDE_3_5_SONNET": "anthropic/claude-3.5-sonnet",
            "CLAUDE_3_HAIKU": "anthropic/claude-3-haiku",
            "GEMINI_2_5_FLASH": "google/gemini-2.5-flash",
            "LLAMA_3_1_70B": "meta-llama/llama-3.1-70b-instruct",
            "MISTRAL_LARGE": "mistralai/mistral-large",
            "DEEPSEEK_V3_1": "deepseek/deepseek-v3.1",
            "AUTO_ROUTER": "openrouter/auto",
        },
    },
    "LLM7": {
        "base_url": "https://api.llm7.io/v1",
        "api_key_setting": "llm7_api_key",
        "models": {
            "DEEPSEEK_V3_1": "deepseek-v3.1",
            "GEMINI_2_5_FLASH_LITE": "gemini-2.5-flash-lite",
            "MISTRAL_SMALL_3_1_24B": "mistral-small-3.1-24b-instruct-2503",
            "GPT_5_MINI": "gpt-5-mini",
            "GPT_5_CHAT": "gpt-5-chat",
            "GLM_4_5_FLASH": "glm-4.5-flash",
        },
    },
}

IMAGE_PROVIDER = "A4F"


class LLMServiceError(Exception):
    """Base error for generative AI calls."""
    pass


class AuthenticationError(LLMServiceError):
    pass


class RateLimitExceeded(LLMServiceError):
    pass


class InvalidRequestError(LLMServiceError):
    pass


class ModelNotFoundError(LLMServiceError):
    pass


class ProviderServerError(LLMServiceError):
    pass


_FENCE_START = re.compile(r"```json\s*")
_FENCE_END = re.compile(r"```\s*$")
_QUOTED = re.compile(r'"([^"]+)"')
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def strip_json_fences(text: str) -> str:
    """Remove markdown code fences an LLM wraps around JSON."""
    return _FENCE_END.sub("", _FENCE_START.sub("", text or "")).strip()


def parse_title_list(text: str) -> List[str]:
    """Parse a JSON array of titles; fall back to every quoted string in the text."""
    try:
        parsed = json.loads(strip_json_fences(text))
    except ValueError:
        logger.warning("Could not parse title list as JSON, extracting quoted strings")
        return _QUOTED.findall(text or "")
    if isinstance(parsed, list):
        return [str(item) for item in parsed if isinstance(item, (str, int, float))]
    if isinstance(parsed, dict):
        # Some providers wrap the array in an object when JSON mode is on
        for value in parsed.values():
            if isinstance(value, list):
                return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


def _describe(item: Dict[str, Any], title_key: str = "title") -> str:
    description = item.get("description")
    blurb = description[:100] + "..." if description else "No description"
    return f'- "{item.get(title_key)}" by {item.get("author") or "Unknown"} ({blurb})'


class LLMService:
    """Client for the configured LLM providers, with usage logging to SQLite."""

    def __init__(self, provider: Optional[str] = None, model: Optional[str] = None,
                 http_client: Optional[PooledHTTPClient] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: Optional[float] = None):
        self.provider = (provider or settings.llm_provider).upper()
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.llm_timeout
        if http_client is None and transport is not None:
            http_client = PooledHTTPClient(timeout=self.timeout, transport=transport)
        self._http = http_client

    async def _client(self) -> PooledHTTPClient:
        if self._http is not None:
            return self._http
        return await get_http_client()

    # ------------------------- Provider resolution ------------------------- #
    def resolve(self, provider: Optional[str] = None, model: Optional[str] = None) -> Dict[str, str]:
        """Map a provider name and model key to base URL, model id and API key."""
        provider_name = (provider or self.provider).upper()
        config = LLM_PROVIDERS.get(provider_name)
        if not config:
            raise ValueError(
                f'Provider "{provider_name}" not found. Available providers: {", ".join(LLM_PROVIDERS)}'
            )

        model_key = model or (self.model if provider_name == self.provider else next(iter(config["models"])))
        models = config["models"]
        if model_key in models:
            model_name = models[model_key]
        elif model_key in models.values():
            model_name = model_key
        else:
            raise ValueError(
                f'Model "{model_key}" not found for provider "{provider_name}". '
                f'Available models: {", ".join(models)}'
            )

        api_key = getattr(settings, config["api_key_setting"], None)
        if not api_key:
            raise AuthenticationError(
                f'API key for provider "{provider_name}" is not configured. '
                f'Set {config["api_key_setting"].upper()}.'
            )
        return {"provider": provider_name, "base_url": config["base_url"], "model": model_name, "api_key": api_key}

    def is_available(self) -> bool:
        if not settings.enable_ai_features:
            return False
        config = LLM_PROVIDERS.get(self.provider)
        return bool(config and getattr(settings, config["api_key_setting"], None))

    # ------------------------- Core calls ------------------------- #
    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                return error.get("message")
            if isinstance(error, str):
                return error
        return None

    def _raise_for_status(self, response: httpx.Response, model: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._error_message(response)
        if status in (401, 403):
            raise AuthenticationError("Authentication failed. Please check your API key.")
        if status == 429:
            raise RateLimitExceeded("Rate limit exceeded. Please wait a moment and try again.")
        if status == 400:
            raise InvalidRequestError(f"Invalid request: {message or 'Bad request'}")
        if status == 404:
            raise ModelNotFoundError(f'Model "{model}" not found. Please check the model name.')
        if status >= 500:
            raise ProviderServerError("Server error. Please try again later.")
        raise LLMServiceError(f"API error ({status}): {message or 'Unknown error'}")

    async def complete(self, messages: List[Dict[str, str]], provider: Optional[str] = None,
                       model: Optional[str] = None, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None, response_format: str = "text") -> str:
        """Send a chat completion request and return the stripped reply text."""
        if not messages:
            raise ValueError("At least one message is required")
        target = self.resolve(provider, model)

        payload: Dict[str, Any] = {
            "model": target["model"],
            "messages": messages,
            "temperature": settings.llm_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.llm_max_tokens,
        }
        if response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {target['api_key']}",
            "Content-Type": "application/json",
        }
        endpoint = f"{target['provider']}/{target['model']}"
        characters_used = sum(len(m.get("content") or "") for m in messages)
        client = await self._client()
        start_time = time.time()

        try:
            response = await client.post(
                f"{target['base_url']}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            self._log_api_usage(endpoint, characters_used, False)
            raise LLMServiceError(f"Request timed out after {self.timeout}s") from exc
        except httpx.RequestError as exc:
            self._log_api_usage(endpoint, characters_used, False)
            raise LLMServiceError("Network connection failed. Please check your internet connection.") from exc

        response_time_ms = int((time.time() - start_time) * 1000)
        try:
            self._raise_for_status(response, target["model"])
            data = response.json()
            choices = data.get("choices") or []
            content = (choices[0].get("message") or {}).get("content") if choices else None
        except LLMServiceError:
            self._log_api_usage(endpoint, characters_used, False, response_time_ms)
            raise
        except (ValueError, AttributeError) as exc:
            self._log_api_usage(endpoint, characters_used, False, response_time_ms)
            raise LLMServiceError("Malformed response from provider") from exc

        if not content:
            self._log_api_usage(endpoint, characters_used, False, response_time_ms)
            raise LLMServiceError("No content received from API")

        self._log_api_usage(endpoint, characters_used, True, response_time_ms)
        return content.strip()

    async def generate_text(self, prompt: str, system_prompt: Optional[str] = None, **options) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.complete(messages, **options)

    async def generate_json(self, prompt: str, **options) -> Any:
        text = await self.generate_text(prompt, response_format="json", **options)
        try:
            return json.loads(strip_json_fences(text))
        except ValueError as exc:
            raise LLMServiceError("Failed to parse AI response as JSON. Please try again.") from exc

    async def chat(self, history: List[Dict[str, str]], message: str, system_prompt: Optional[str] = None,
                   **options) -> str:
        """Continue a conversation. History items are ``{"sender": "user"|"ai", "text": ...}``."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for item in history or []:
            text = item.get("text") or item.get("content")
            if not text:
                continue
            sender = item.get("sender") or item.get("role") or "user"
            messages.append({"role": "user" if sender == "user" else "assistant", "content": text})
        messages.append({"role": "user", "content": message})
        return await self.complete(messages, **options)

    # ------------------------- Prompt helpers ------------------------- #
    async def generate_book_description(self, title: str, author: Optional[str] = None) -> str:
        prompt = f"""Generate a compelling and informative book description for the following book:

Title: {title}
Author: {author or "Unknown"}

Please provide a description that includes:
- A brief overview of what the book is about
- The main themes or topics covered
- Why someone might want to read it
- Keep it between 100-200 words

Make it engaging and suitable for a library catalog. Do not use any markdown formatting like **bold** or *italic* text. Write in plain text only."""
        return await self.generate_text(prompt)

    async def generate_resource_description(self, title: str, author: Optional[str] = None) -> str:
        prompt = f"""Write a single, engaging description for a PDF document titled "{title}" by {author or "Unknown"}.

Requirements:
- Write exactly ONE description (no multiple options or numbered lists)
- Do not include any headers, titles, or formatting like "Option 1" or "**Bold text**"
- Focus on what the document likely contains based on its title and author
- Make it informative and enticing to encourage reading
- Keep it between 100-200 words
- Write in a natural, flowing paragraph style
- Assume this is educational or professional content unless the title suggests otherwise

Description:"""
        return await self.generate_text(prompt)

    async def generate_cover_description(self, title: str, author: Optional[str] = None) -> str:
        prompt = f"""Generate a creative and visually descriptive prompt for designing a book cover for:

Title: "{title}"
Author: {author or "Unknown"}

Create a detailed description that an AI image generator can use to create a professional book cover. Focus on:

- Visual style and aesthetic (modern, classic, artistic, minimalist, etc.)
- Color scheme and mood (warm, cool, dark, bright, mysterious, etc.)
- Key visual elements that represent the book's genre or theme
- Typography style suggestions
- Overall composition and layout hints

Keep the description concise but detailed enough for AI image generation (50-100 words).

Do not include any plot spoilers or story details - focus purely on visual design elements."""
        return await self.generate_text(prompt, provider="A4F", model="LLAMA_3_2")

    async def generate_book_summary(self, title: str) -> str:
        prompt = f"""Generate a concise and engaging summary of the book "{title}".

Please provide:
1. A brief overview (2-3 sentences)
2. Main themes or topics covered
3. Why someone might enjoy reading it
4. Target audience

Keep the total summary under 200 words. Make it informative and enticing."""
        return await self.generate_text(prompt)

    async def generate_resource_summary(self, title: str) -> str:
        prompt = f"""Generate a concise and engaging summary of the resource "{title}".

Please provide:
1. A brief overview (2-3 sentences) of what this resource covers
2. Main topics or subjects discussed
3. Who would benefit from reading this resource
4. Key takeaways or important concepts covered

Keep the total summary under 200 words. Make it informative and enticing for someone considering reading this resource."""
        return await self.generate_text(prompt)

    async def generate_book_content(self, topic: str) -> Dict[str, str]:
        """Invent a book title and a 2-3 paragraph description for a topic."""
        prompt = f"""Generate a creative book title and a compelling 2-3 paragraph description for a book about: "{topic}"

Please format your response as JSON with the following structure:
{{
  "title": "Book Title Here",
  "description": "First paragraph of description.\\n\\nSecond paragraph of description.\\n\\nThird paragraph if needed."
}}

Make the title engaging and the description informative and enticing. The description should be suitable for a book cover or marketing material."""
        text = await self.generate_text(prompt)
        match = _JSON_OBJECT.search(text)
        if not match:
            raise LLMServiceError("Invalid response format")
        try:
            data = json.loads(match.group(0))
        except ValueError as exc:
            raise LLMServiceError("Invalid response format") from exc
        if not isinstance(data, dict) or not data.get("title") or not data.get("description"):
            raise LLMServiceError("Invalid response format")
        return {"title": str(data["title"]).strip(), "description": str(data["description"]).strip()}

    async def generate_book_recommendations(self, borrowed: List[Dict[str, Any]],
                                            top_books: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Recommend books from ``top_books`` based on the reader's recent borrowing."""
        borrowed_text = "\n".join(_describe(b) for b in borrowed)
        top_text = "\n".join(_describe(b) for b in top_books[:20])
        prompt = f"""Based on a user's borrowing history and the top books in our library, recommend 5-8 books they might enjoy.

User's recently borrowed books:
{borrowed_text}

***CRITICAL: DO NOT RECOMMEND ANY BOOKS FROM THIS BORROWING HISTORY LIST ABOVE***

Top books in our library:
{top_text}

Please analyze the user's reading preferences based on their borrowing history and recommend books from the top books list that match their interests.

***IMPORTANT: DO NOT recommend books with titles containing words like 'test', 'demo', 'sample', 'example', 'dummy', 'temp', 'temporary', or 'placeholder'***

For each recommendation, provide:

1. Book title and author
2. Brief reason why this book matches their interests
3. A relevance score (1-10, where 10 is perfect match)

Return the response as a valid JSON array of objects with this structure:
[
  {{
    "title": "Book Title",
    "author": "Author Name",
    "reason": "Why this book matches their interests",
    "relevanceScore": 8
  }}
]

Only return the JSON array, no additional text."""
        result = await self.generate_json(prompt)
        if isinstance(result, dict):
            result = next((v for v in result.values() if isinstance(v, list)), [])
        if not isinstance(result, list):
            return []

        borrowed_titles = {(b.get("title") or "").lower() for b in borrowed}
        recommendations = []
        for item in result:
            if not isinstance(item, dict) or not isinstance(item.get("title"), (str, int, float)):
                continue
            title = str(item["title"]).strip()
            if not title or title.lower() in borrowed_titles:
                continue
            recommendations.append({
                "title": title,
                "author": str(item.get("author") or "Unknown"),
                "reason": item.get("reason") or "",
                "relevanceScore": item.get("relevanceScore", 0),
            })
        return recommendations

    async def find_similar_titles(self, title: str, candidates: List[Dict[str, Any]], kind: str = "book",
                                  title_key: str = "title") -> List[str]:
        """Ask the model which candidate titles are most similar to ``title``."""
        plural = f"{kind}s"
        listing = "\n".join(
            f'"{c.get(title_key)}" by {c.get("author") or "Unknown"}: {c.get("description") or "No description"}'
            for c in candidates[:50]
        )
        prompt = f"""Given the {kind} "{title}", find the 5 most similar {plural} from this list based on themes, topics, genre, or subject matter. Consider {plural} that would appeal to readers of "{title}".

{plural.capitalize()} in our library:
{listing}

Return only a JSON array of the most similar {kind} titles (exactly as they appear in the list above). Return at most 5 {plural}. If no similar {plural} are found, return an empty array.

Example response: ["{kind.capitalize()} Title 1", "{kind.capitalize()} Title 2", "{kind.capitalize()} Title 3"]"""
        text = await self.generate_text(prompt)
        return parse_title_list(text)

    # ------------------------- Cover images ------------------------- #
    async def generate_book_cover(self, title: str, author: Optional[str] = None, description: str = "") -> str:
        """Generate a cover image and return it as a base64 data URL."""
        target = self.resolve(IMAGE_PROVIDER, next(iter(LLM_PROVIDERS[IMAGE_PROVIDER]["models"])))
        guidelines = "" if description else """Guidelines:
- Clean, elegant, and typography-focused design
- Prominent title, balanced author name
- Genre-reflective color palette
- Subtle abstract/geometric elements hinting at content
- High readability and contrast
- Background should enhance, not distract
"""
        prompt = f"""Design a professional, modern book cover for:

Title: "{title}"
Author: {author or 'Unknown Author'}
{f'Description: {description}' if description else ''}

{guidelines}
Restrictions:
- Use only abstract shapes, textures, or symbols
- No realistic or scene-based visuals

The cover must look bookstore-quality and visually captivating."""

        payload = {
            "model": settings.cover_image_model,
            "prompt": prompt,
            "n": 1,
            "size": settings.cover_image_size,
            "response_format": "url",
            "quality": "standard",
        }
        headers = {"Authorization": f"Bearer {target['api_key']}", "Content-Type": "application/json"}
        endpoint = f"{IMAGE_PROVIDER}/{settings.cover_image_model}"
        client = await self._client()
        start_time = time.time()

        try:
            response = await client.post(f"{target['base_url']}/images/generations", json=payload,
                                         headers=headers, timeout=self.timeout)
            self._raise_for_status(response, settings.cover_image_model)
            data = response.json().get("data") or []
            if not data or not data[0].get("url"):
                raise LLMServiceError(
                    "API returned empty data array. This might indicate content filtering or model unavailability."
                )
            image_response = await client.get_with_retry(data[0]["url"], timeout=self.timeout)
            if image_response is None or image_response.status_code != 200:
                raise LLMServiceError("Failed to fetch generated image")
        except LLMServiceError:
            self._log_api_usage(endpoint, len(prompt), False)
            raise
        except httpx.RequestError as exc:
            self._log_api_usage(endpoint, len(prompt), False)
            raise LLMServiceError("Failed to generate book cover. Please try again later.") from exc

        self._log_api_usage(endpoint, len(prompt), True, int((time.time() - start_time) * 1000))
        content_type = image_response.headers.get("content-type", "image/png").split(";")[0]
        encoded = base64.b64encode(image_response.content).decode("ascii")
        return f"data:{content_type};base64,{encoded}"

    # ------------------------- Usage tracking ------------------------- #
    def _log_api_usage(self, endpoint: str, characters_used: int, success: bool, response_time_ms: int = 0) -> None:
        conn = get_db_connection()
        try:
            conn.execute(
                """
                INSERT INTO api_usage_logs (api_name, endpoint, success, response_time_ms, characters_used)
                VALUES (?, ?, ?, ?, ?)
                """,
                ("llm", endpoint, success, response_time_ms, characters_used),
            )
            conn.commit()
            logger.info(f"LLM usage logged: endpoint={endpoint}, chars={characters_used}, success={success}")
        except Exception as e:
            logger.error(f"Failed to log API usage: {e}")
        finally:
            conn.close()

    def get_usage_stats(self) -> Dict[str, Any]:
        """Call counts and latency over the last 30 days."""
        conn = get_db_connection()
        try:
            row = conn.execute("""
                SELECT COUNT(*) AS total_calls,
                       SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) AS successful_calls,
                       AVG(response_time_ms) AS avg_response_time,
                       SUM(characters_used) AS characters_used
                FROM api_usage_logs
                WHERE api_name = 'llm'
                AND created_at >= datetime('now', '-30 days')
            """).fetchone()
            per_endpoint = conn.execute("""
                SELECT endpoint, COUNT(*) AS calls
                FROM api_usage_logs
                WHERE api_name = 'llm'
                AND created_at >= datetime('now', '-30 days')
                GROUP BY endpoint
                ORDER BY calls DESC
            """).fetchall()
        finally:
            conn.close()

        total_calls = row["total_calls"] or 0
        successful_calls = row["successful_calls"] or 0
        return {
            "total_calls_30_days": total_calls,
            "successful_calls_30_days": successful_calls,
            "success_rate": (successful_calls / total_calls * 100) if total_calls > 0 else 0,
            "avg_response_time_ms": row["avg_response_time"] or 0,
            "characters_used_30_days": row["characters_used"] or 0,
            "calls_by_endpoint": {r["endpoint"]: r["calls"] for r in per_endpoint},
            "default_provider": self.provider,
            "api_available": self.is_available(),
        }
