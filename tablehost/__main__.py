import argparse
import asyncio
import logging

from cardtable.registry import GAME_TYPES
from .server import TableHost

logging.basicConfig(level=logging.INFO)


def parse_players(raw: str):
    names = [name.strip() for name in raw.split(",") if name.strip()]
    return [{"id": f"p{idx}", "name": name, "seat": idx} for idx, name in enumerate(names, start=1)]


def main() -> None:
    parser = argparse.ArgumentParser(description="Card table host server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--game", choices=sorted(GAME_TYPES), default="teen-patti")
    parser.add_argument("--session-id", default="T-1")
    parser.add_argument("--session-name", default="")
    parser.add_argument("--players", default="Alice,Bob,Cara", help="Comma separated player names; ids are p1, p2, ...")
    parser.add_argument("--limit-type", choices=["rounds", "points"], default=None)
    parser.add_argument("--rounds", type=int, default=None, help="Number of hands/rounds for a rounds limit")
    parser.add_argument("--target-score", type=int, default=None)
    parser.add_argument("--boot", type=int, default=None, help="Teen Patti boot amount")
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=60.0,
        help="Seconds before an unanswered side show, show or declaration is cancelled (0 disables)",
    )
    parser.add_argument(
        "--auto-start",
        action="store_true",
        help="Start rounds automatically once every player is connected",
    )
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    config = {
        "limit_type": args.limit_type,
        "total_rounds": args.rounds,
        "target_score": args.target_score,
        "boot_amount": args.boot,
        "request_timeout": args.request_timeout,
        "seed": args.seed,
    }
    if args.rounds is not None and args.limit_type is None:
        config["limit_type"] = "rounds"

    host = TableHost(auto_start=args.auto_start)
    host.open_session(
        args.game,
        args.session_id,
        session_name=args.session_name,
        config=config,
        players=parse_players(args.players),
    )
    asyncio.run(host.start(host=args.host, port=args.port))


if __name__ == "__main__":
    main()
