import argparse
import json
import shutil
import sys

from loguru import logger

from config import DEFAULT_DB_PATH
from db import NotFoundError, TrainingDayRepository
from migrate import migrate
from rest_api import TrackerAPI


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def show_status(db_path: str, yaml_path: str) -> dict:
    """Resolve today's training day and print it as JSON."""
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    payload = api.rotation.status(api.today())
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return payload


def complete_today(db_path: str, yaml_path: str) -> bool:
    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    today = api.today()
    try:
        record = api.rotation.mark_today_completed(today)
    except NotFoundError:
        print(f"No training day assigned for {today}; run 'status' first")
        return False
    print(f"Day {record.planned_day} completed on {today}")
    return True


def show_calendar(db_path: str) -> None:
    for record in TrainingDayRepository(db_path).list_all():
        flags = []
        if record.completed:
            flags.append("done")
        if record.rescheduled:
            flags.append("rescheduled")
        print(f"{record.date}  day {record.planned_day}  {' '.join(flags)}".rstrip())


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def serve(db_path: str, yaml_path: str, host: str, port: int) -> None:
    import uvicorn

    api = TrackerAPI(db_path=db_path, yaml_path=yaml_path)
    configure_logging(api.settings.get_text("log_level", "INFO"))
    uvicorn.run(api.app, host=host, port=port)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Workout rotation tracker")
    sub = parser.add_subparsers(dest="cmd", required=True)

    srv = sub.add_parser("serve")
    srv.add_argument("--db", default=DEFAULT_DB_PATH)
    srv.add_argument("--yaml", default="settings.yaml")
    srv.add_argument("--host", default="0.0.0.0")
    srv.add_argument("--port", type=int, default=3000)

    st = sub.add_parser("status")
    st.add_argument("--db", default=DEFAULT_DB_PATH)
    st.add_argument("--yaml", default="settings.yaml")

    done = sub.add_parser("complete")
    done.add_argument("--db", default=DEFAULT_DB_PATH)
    done.add_argument("--yaml", default="settings.yaml")

    cal = sub.add_parser("calendar")
    cal.add_argument("--db", default=DEFAULT_DB_PATH)

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default=DEFAULT_DB_PATH)
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default=DEFAULT_DB_PATH)

    mig = sub.add_parser("migrate")
    mig.add_argument("--db", default=DEFAULT_DB_PATH)

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        serve(args.db, args.yaml, args.host, args.port)
    elif args.cmd == "status":
        show_status(args.db, args.yaml)
    elif args.cmd == "complete":
        if not complete_today(args.db, args.yaml):
            sys.exit(1)
    elif args.cmd == "calendar":
        show_calendar(args.db)
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)
    elif args.cmd == "migrate":
        migrate(args.db)


if __name__ == "__main__":
    main()
