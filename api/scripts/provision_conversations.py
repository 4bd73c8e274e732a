import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app.config import LOG_LEVEL, SWEEP_BATCH_SIZE
from app.deps import build_match_service
from app.services.conversation_client import ConversationServiceClient


def main() -> None:
    parser = argparse.ArgumentParser(description="Create conversations for matched sessions that are still missing one")
    parser.add_argument("--limit", type=int, default=SWEEP_BATCH_SIZE)
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    client = ConversationServiceClient.from_config()
    try:
        summary = build_match_service(client).provision_pending(max(1, args.limit))
    finally:
        client.close()
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
