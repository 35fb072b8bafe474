"""LangGraph agent definition for feedsync."""

import json
import logging
import sqlite3
from typing import Literal

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import SystemMessage, ToolMessage
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, MessagesState, StateGraph

from feedsync.config import CHECKPOINT_DB_PATH
from feedsync.database import StoreError
from feedsync.tools import (
    get_entries,
    list_feeds,
    mark_as_read,
    mark_as_unread,
    search_entries,
    subscribe_to_feed,
    sync_feeds,
    sync_status,
    tag_feed,
    unsubscribe_from_feed,
    untag_feed,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are feedsync, a helpful assistant that manages the user's RSS and Atom feeds.

You help users:
- Subscribe to RSS and Atom feeds by URL, optionally with tags
- Browse the latest entries, by feed, tag, date range or read status
- Organize feeds with tags
- Unsubscribe from feeds they no longer want
- Search entries by keyword across all feeds
- Mark entries as read or unread
- Sync feeds on demand and report how background syncing is going

When a user wants to subscribe to a feed, use subscribe_to_feed with the URL they provide and any tags they mention.
When a user asks to see entries, news, or what's new, use get_entries. You can filter by:
- A specific feed (by title or URL)
- A tag
- Date range (since/until in ISO 8601 format)
- Unread entries only
When a user asks to see their feeds or subscriptions, use list_feeds, passing a tag if they name one.
When a user wants to tag or untag a feed, use tag_feed or untag_feed.
When a user wants to unsubscribe or remove a feed, use unsubscribe_from_feed with the feed title or URL.
When a user wants to search for entries by keyword, use search_entries.
When a user wants to mark entries as read, use mark_as_read. You can mark specific entry IDs or all entries from a feed.
When a user wants to mark entries as unread, use mark_as_unread with the entry IDs.
When a user asks to refresh or sync, use sync_feeds. If a sync is already running, tell them and suggest waiting.
When a user asks whether syncing works or when feeds last updated, use sync_status or list_feeds.
If a feed shows errors, explain the last outcome in plain words.
If they give you a website URL (not a feed URL), try common feed paths like /feed, /rss, or /atom.xml.
When the user's intent is unclear, ask a clarifying question rather than guessing.
Present entries in a readable format: title, link, date, and a brief summary.
Be concise but informative in your responses."""

# All tools available to the agent
TOOLS = [
    subscribe_to_feed,
    get_entries,
    list_feeds,
    tag_feed,
    untag_feed,
    unsubscribe_from_feed,
    search_entries,
    mark_as_read,
    mark_as_unread,
    sync_feeds,
    sync_status,
]


DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


def create_agent(
    checkpoint_db_path: str = CHECKPOINT_DB_PATH,
    tools: list | None = None,
    model_name: str = DEFAULT_MODEL,
):
    """Create and compile the LangGraph agent.

    Args:
        checkpoint_db_path: Path to SQLite database for LangGraph checkpointing.
        tools: List of tool functions to bind to the agent. If None, uses default TOOLS.
        model_name: Anthropic model used for the conversation.

    Returns:
        Compiled LangGraph agent.
    """
    if tools is None:
        tools = TOOLS

    model = ChatAnthropic(model=model_name, temperature=0)
    model_with_tools = model.bind_tools(tools) if tools else model
    tools_by_name = {tool.name: tool for tool in tools}

    def agent_node(state: MessagesState):
        """LLM call node: decides whether to use a tool or respond directly."""
        messages = [SystemMessage(content=SYSTEM_PROMPT)] + state["messages"]
        response = model_with_tools.invoke(messages)
        return {"messages": [response]}

    def tool_node(state: MessagesState):
        """Execute tool calls from the LLM response."""
        return {
            "messages": [
                run_tool_call(tools_by_name, tool_call)
                for tool_call in state["messages"][-1].tool_calls
            ]
        }

    def should_continue(state: MessagesState) -> Literal["tool_node", "__end__"]:
        """Route to tool execution or end based on LLM output."""
        if state["messages"][-1].tool_calls:
            return "tool_node"
        return END

    builder = StateGraph(MessagesState)
    builder.add_node("agent_node", agent_node)
    builder.add_node("tool_node", tool_node)

    builder.add_edge(START, "agent_node")
    builder.add_conditional_edges("agent_node", should_continue, ["tool_node", END])
    builder.add_edge("tool_node", "agent_node")

    checkpointer = SqliteSaver(sqlite3.connect(checkpoint_db_path, check_same_thread=False))
    return builder.compile(checkpointer=checkpointer)


def run_tool_call(tools_by_name: dict, tool_call: dict) -> ToolMessage:
    """Invoke one tool call, turning failures into an error result for the model."""
    tool = tools_by_name.get(tool_call["name"])
    if tool is None:
        content = json.dumps({"status": "error", "message": f"Unknown tool {tool_call['name']}"})
    else:
        try:
            content = str(tool.invoke(tool_call["args"]))
        except StoreError as e:
            logger.warning("Tool %s failed: %s", tool_call["name"], e)
            content = json.dumps({"status": "error", "message": str(e)})
    return ToolMessage(content=content, tool_call_id=tool_call["id"])
