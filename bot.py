"""Entry point for the identity verification bot."""

from __future__ import annotations

import asyncio

from bots.verification import main

if __name__ == "__main__":
    asyncio.run(main())
