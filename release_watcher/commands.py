"""
Chat command front end.

Parses commands received by an endpoint and calls into the registry and
the subscription store. Replies are MarkdownV2 text.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from release_watcher.config import DEFAULT_MESSAGE_PATTERN
from release_watcher.errors import (
    AlreadyExistsError,
    FeedFetchError,
    FeedNotFoundError,
    ReleaseWatcherError,
)
from release_watcher.filters import validate_repo
from release_watcher.formatter import escape_code, escape_markdown
from release_watcher.registry import Registry
from release_watcher.storage import Storage

logger = logging.getLogger(__name__)

SEPARATOR = "\\=" * 30

UNKNOWN_COMBINATION = "unknown combination of repo and filter, use /list to get list of possible feeds"


class UnauthorizedError(ReleaseWatcherError):
    """Raised when a user may not run a command."""

    def __init__(self) -> None:
        super().__init__("unauthorized action")


@dataclass
class CommandContext:
    """
    A chat message received by an endpoint.

    Attributes
    ----------
    text : str
        Raw message text.
    chat_id : str
        Chat the message was posted in; used as the recipient ID.
    user_id : int
        Author ID.
    username : str
        Author username, may be empty.
    is_private : bool
        Whether the chat is a one-to-one conversation with the bot.
    admin_check : Callable | None
        Coroutine factory telling whether the author administers the chat.
    """

    text: str
    chat_id: str
    user_id: int = 0
    username: str = ""
    is_private: bool = True
    admin_check: Callable[[], Awaitable[bool]] | None = field(default=None, repr=False)


@dataclass
class Command:
    handler: Callable[[list[str], CommandContext], Awaitable[str]]
    description: str
    hidden: bool = False


class CommandProcessor:
    """
    Handle the chat commands of one endpoint.

    Commands:

    - ``/new repo filter_name regexp`` creates a subscribable filter
    - ``/subscribe repo filter_name`` subscribes the current chat
    - ``/unsubscribe repo filter_name`` unsubscribes the current chat
    - ``/list`` lists configured filters
    - ``/forceProcess repo`` polls a repository now (admin only)
    - ``/help`` shows this help
    """

    def __init__(
        self,
        endpoint: str,
        registry: Registry,
        storage: Storage,
        admin_username: str | None = None,
        bot_username: str | None = None,
    ):
        """
        Initialize the processor.

        Parameters
        ----------
        endpoint : str
            Endpoint name stored with subscriptions.
        registry : Registry
            Registry of feed pollers.
        storage : Storage
            Subscription store.
        admin_username : str | None
            Username allowed to run every command in every chat.
        bot_username : str | None
            Bot username accepted in ``/command@bot`` form.
        """
        self.endpoint = endpoint
        self.registry = registry
        self.storage = storage
        self.admin_username = admin_username
        self.bot_username = bot_username

        self.commands: dict[str, Command] = {
            "/new": Command(
                self._handle_new,
                "`/new repo filter_name filter_regexp` \\-\\- creates new available subscription\n\n"
                "Example:\n  `/new lomik/go\\-carbon all ^v`\n\n"
                "This will create repo named 'lomik/go\\-carbon', with filter called 'all' "
                "and regexp that will grab all tags that start with 'v'",
            ),
            "/subscribe": Command(
                self._handle_subscribe,
                "`/subscribe repo filter_name` \\-\\- subscribe current chat to specific repo and filter\n\n"
                "Example:\n  `/subscribe lomik/go\\-carbon all`",
            ),
            "/unsubscribe": Command(
                self._handle_unsubscribe,
                "`/unsubscribe repo filter_name` \\-\\- unsubscribe current chat from specific repo and filter\n\n"
                "Example:\n  `/unsubscribe lomik/go\\-carbon all`",
            ),
            "/list": Command(
                self._handle_list,
                "`/list` \\-\\- lists all available repos",
            ),
            "/forceProcess": Command(
                self._handle_force_process,
                "`/forceProcess repo` \\-\\- force process repository \\(admin only\\)",
                hidden=True,
            ),
            "/help": Command(
                self._handle_help,
                "`/help` \\-\\- display current help",
            ),
        }

    def _resolve(self, token: str) -> Command | None:
        """Find the command for a token, accepting ``/cmd@this_bot``."""
        command = self.commands.get(token)
        if command is not None:
            return command

        name, _, addressee = token.partition("@")
        if addressee and self.bot_username and addressee == self.bot_username:
            return self.commands.get(name)
        return None

    async def handle(self, context: CommandContext) -> str | None:
        """
        Run a chat message as a command.

        Parameters
        ----------
        context : CommandContext
            The received message.

        Returns
        -------
        str | None
            MarkdownV2 reply, or None if the message is not a command.
        """
        tokens = context.text.split()
        if not tokens:
            return None

        command = self._resolve(tokens[0])
        if command is None:
            return None

        logger.debug("Running %s for %s in chat %s", tokens[0], context.username, context.chat_id)

        try:
            return await command.handler(tokens, context)
        except ReleaseWatcherError as e:
            logger.info("Command %s rejected: %s", tokens[0], e)
            return escape_markdown(str(e))

    async def _check_authorized(self, context: CommandContext) -> None:
        """Allow private chats, chat administrators and the configured admin."""
        if context.is_private:
            return
        if self.admin_username and context.username == self.admin_username:
            return
        if context.admin_check is not None and await context.admin_check():
            return
        raise UnauthorizedError()

    def _usage(self, name: str, message: str) -> str:
        return f"{escape_markdown(message)}\n\n{self.commands[name].description}"

    async def _handle_new(self, tokens: list[str], context: CommandContext) -> str:
        await self._check_authorized(context)
        if len(tokens) != 4:
            return self._usage("/new", "/new requires exactly 3 arguments")

        repo, name, pattern = tokens[1], tokens[2], tokens[3]
        validate_repo(repo)

        try:
            await self.registry.parser.fetch(self.registry.feed_url(repo))
        except FeedNotFoundError:
            return escape_markdown("repo is not accessible or doesn't exist")
        except FeedFetchError as e:
            return escape_markdown(f"repo is not accessible: {e}")

        try:
            await self.registry.register_feed(repo, name, name, pattern, DEFAULT_MESSAGE_PATTERN)
        except AlreadyExistsError:
            return escape_markdown(f"filter {name} already exists for {repo}")

        return "done"

    async def _handle_subscribe(self, tokens: list[str], context: CommandContext) -> str:
        await self._check_authorized(context)
        if len(tokens) != 3:
            return self._usage("/subscribe", "/subscribe requires exactly 2 arguments")

        repo, name = tokens[1], tokens[2]
        if not await self.registry.has_filter(repo, name):
            return escape_markdown(UNKNOWN_COMBINATION)

        try:
            await self.storage.add_subscription(self.endpoint, repo, name, context.chat_id)
        except AlreadyExistsError:
            return "already subscribed"

        logger.info("Chat %s subscribed to %s/%s on '%s'", context.chat_id, repo, name, self.endpoint)
        return "successfully subscribed"

    async def _handle_unsubscribe(self, tokens: list[str], context: CommandContext) -> str:
        await self._check_authorized(context)
        if len(tokens) != 3:
            return self._usage("/unsubscribe", "/unsubscribe requires exactly 2 arguments")

        repo, name = tokens[1], tokens[2]
        if not await self.registry.has_filter(repo, name):
            return escape_markdown(UNKNOWN_COMBINATION)

        removed = await self.storage.remove_subscription(self.endpoint, repo, name, context.chat_id)
        if not removed:
            return "not subscribed"

        logger.info("Chat %s unsubscribed from %s/%s on '%s'", context.chat_id, repo, name, self.endpoint)
        return "successfully unsubscribed"

    async def _handle_list(self, tokens: list[str], context: CommandContext) -> str:
        lines = ["Configured feeds:"]
        for repo, name, display_name in await self.registry.list_display_names():
            line = f"`{escape_code(repo)}`: `{escape_code(name)}`"
            if display_name != name:
                line += f" \\({escape_markdown(display_name)}\\)"
            lines.append(line)
        return "\n".join(lines)

    async def _handle_force_process(self, tokens: list[str], context: CommandContext) -> str:
        if not self.admin_username or context.username != self.admin_username:
            raise UnauthorizedError()
        if len(tokens) != 2:
            return self._usage("/forceProcess", "/forceProcess requires exactly 1 argument")

        repo = validate_repo(tokens[1])
        if not await self.registry.force_process(repo):
            return escape_markdown(f"unknown repo {repo}")
        return "done"

    async def _handle_help(self, tokens: list[str], context: CommandContext) -> str:
        sections = [
            command.description
            for command in self.commands.values()
            if not command.hidden
        ]
        return f"\n\n{SEPARATOR}\n\n".join(sections)
