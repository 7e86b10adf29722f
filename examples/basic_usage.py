"""
PropDesk API Python SDK - Basic Usage Example

This example demonstrates the basic usage of the PropDesk API client
against a locally running backend.
"""

import asyncio
import logging

from propdesk_api import (
    ApiClient,
    ApiConfig,
    ApiError,
    AuthenticationError,
    FileStorage,
    NetworkError,
    AUTH_LOGOUT,
    WS_MESSAGE,
)


async def main():
    """Login, browse properties, and listen for realtime updates."""
    logging.basicConfig(level=logging.DEBUG)

    config = ApiConfig.from_env(storage=FileStorage(), debug=True)

    async with ApiClient(config) as client:
        client.events.on(AUTH_LOGOUT, lambda payload: print(f"Session ended: {payload}"))
        client.events.on(WS_MESSAGE, lambda message: print(f"Push: {message}"))

        try:
            result = await client.login("manager@example.com", "SecurePassword123!")
            print(f"Logged in as: {result.user.get('email')}")
        except AuthenticationError as e:
            print(f"Auth failed: {e.message}")
            return
        except NetworkError as e:
            print(f"Backend unreachable (expected without a running API): {e.message}")
            return

        page = await client.paginate("/properties", {"city": "Lisbon"}, page=1, limit=20)
        print(f"{page.total} properties, page {page.page}/{page.total_pages}")
        # Same endpoint and params, so this one is served from cache
        await client.get_properties({"city": "Lisbon", "page": 1, "limit": 20})

        try:
            await client.update_booking_status("b-1001", "confirmed")
        except ApiError as e:
            print(f"Booking update failed ({e.status_code}): {e.message}")

        await client.upload_file(
            "/properties/p-1/documents",
            b"%PDF-1.7 example",
            filename="lease.pdf",
            content_type="application/pdf",
            on_progress=lambda percent: print(f"Upload {percent:.0f}%"),
        )

        await client.setup_websocket(result.user.get("id", ""))
        await asyncio.sleep(5)

        await client.logout()


if __name__ == "__main__":
    asyncio.run(main())
