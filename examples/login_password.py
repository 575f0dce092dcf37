import asyncio
import os
from pathlib import Path

from compasspy import SessionManager


async def main():
    school = os.getenv("COMPASS_SCHOOL", "myschool-vic")
    login = os.getenv("COMPASS_LOGIN", "student_login")
    password = os.getenv("COMPASS_PASSWORD", "password")

    manager = SessionManager(school, log_sink=print)
    print(f"Logging in to {manager.session.base_url}...")
    if not await manager.authenticate(login, password):
        print("Login failed")
        return

    print(f"Logged in, user id: {manager.session.user_id}")
    Path("session.json").write_text(manager.get_snapshot().to_json())
    print("Session saved to session.json")


if __name__ == "__main__":
    asyncio.run(main())
