import asyncio
from datetime import date, timedelta
from pathlib import Path

from compasspy import Compass, SessionSnapshot


async def main():
    # session.json is written by login_password.py
    snapshot = SessionSnapshot.from_json(Path("session.json").read_text())

    async with Compass(snapshot.to_session()) as compass:
        today = date.today()
        classes = await compass.fetch_classes(
            today, today + timedelta(days=1), include_detail=True,
        )
        for c in classes:
            start = c.start.astimezone().strftime("%a %H:%M")
            print(f"{start}  {c.name:<20} {c.room:<10} {c.teacher or ''}")

        print()
        for task in await compass.fetch_learning_tasks():
            due = task.due.astimezone().date()
            print(f"[{task.status.value:<12}] {due}  {task.class_name}: {task.name}")


if __name__ == "__main__":
    asyncio.run(main())
