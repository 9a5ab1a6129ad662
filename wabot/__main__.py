"""CLI entry point for wabot."""

import argparse
import asyncio


def main():
    parser = argparse.ArgumentParser(description="WhatsApp bot core runtime")
    parser.add_argument("--config", default=None, help="Path to JSON config file")
    args = parser.parse_args()

    from wabot.app import WhatsAppBot

    app = WhatsAppBot(config_path=args.config)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
