"""Entry point for feedsync: python -m feedsync"""

import asyncio
import logging
import os
import sys
import uuid

from langchain_core.messages import HumanMessage

from feedsync.agent import DEFAULT_MODEL, create_agent
from feedsync.config import ConfigError, SyncConfig
from feedsync.database import Database
from feedsync.engine import SyncEngine
from feedsync.scheduler import Scheduler
from feedsync.tools import set_database, set_engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("aiohttp").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("langchain").setLevel(logging.WARNING)

logger = logging.getLogger("feedsync")


async def chat_loop(agent, config: dict) -> None:
    """Run the interactive chat loop."""
    print("feedsync ready! Type your message (Ctrl+C to quit).\n")

    while True:
        try:
            user_input = await asyncio.to_thread(input, "You: ")
        except EOFError:
            break

        if not user_input.strip():
            continue

        try:
            response = await asyncio.to_thread(
                agent.invoke,
                {"messages": [HumanMessage(content=user_input)]},
                config,
            )

            last_message = response["messages"][-1]
            print(f"\nfeedsync: {last_message.content}\n")
        except Exception as e:
            error_msg = str(e)
            if "tool_use" in error_msg and "tool_result" in error_msg:
                # Corrupted checkpoint, start a fresh thread
                config["configurable"]["thread_id"] = uuid.uuid4().hex
                print("\nfeedsync: Sorry, I lost track of our conversation. Please try again.\n")
            else:
                print(f"\nfeedsync: Sorry, I encountered an error: {error_msg}\n")


async def main() -> None:
    """Initialize the store, start background sync and run feedsync."""
    try:
        sync_config = SyncConfig.from_env()
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)

    db = Database(sync_config.db_path)
    db.connect()

    engine = SyncEngine(db, sync_config)
    scheduler = Scheduler(engine, sync_config.sync_interval_minutes)
    set_database(db)
    set_engine(engine, scheduler)

    agent = create_agent(
        checkpoint_db_path=sync_config.checkpoint_path,
        model_name=os.environ.get("FEEDSYNC_MODEL", DEFAULT_MODEL),
    )

    # Each session gets a fresh thread to avoid corrupted checkpoint issues
    config = {"configurable": {"thread_id": uuid.uuid4().hex}}

    scheduler.start()

    try:
        await chat_loop(agent, config)
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        scheduler.stop()
        await scheduler.wait_stopped()
        db.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
