"""
Seed Firestore with demo traffic data and the editor allowlist.

Writes are merges keyed by date / normalized email, so running it twice is
harmless.
"""

import os
from datetime import date, timedelta
from typing import Dict, List, Optional

from google.cloud import firestore
import structlog
import typer

from store import normalize_email

logger = structlog.get_logger()

FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT")
TRAFFIC_COLLECTION = os.getenv("TRAFFIC_COLLECTION", "trafficStats")
EDITORS_COLLECTION = os.getenv("EDITORS_COLLECTION", "editors")

# 2025-03-01 .. 2025-04-30
DEMO_VISITS = [
    120, 140, 98, 132, 101, 87, 94, 178, 164, 112, 106, 133, 90, 124, 110, 175,
    188, 147, 133, 119, 102, 111, 154, 162, 120, 108, 113, 95, 142, 170, 128,
    105, 87, 156, 131, 122, 149, 95, 143, 137, 128, 109, 117, 138, 160, 151,
    100, 134, 141, 108, 157, 120, 99, 126, 153, 115, 130, 98, 118, 167, 148,
]
DEMO_START = date(2025, 3, 1)

app = typer.Typer(no_args_is_help=False, add_completion=False)


def demo_traffic() -> List[Dict[str, object]]:
    return [
        {"date": (DEMO_START + timedelta(days=i)).isoformat(), "visits": visits}
        for i, visits in enumerate(DEMO_VISITS)
    ]


def editors_from_env() -> List[str]:
    return [e for e in os.getenv("SEED_EDITORS", "").split(",") if e.strip()]


def seed(client, traffic: List[Dict[str, object]], editors: List[str]) -> Dict[str, int]:
    """Write traffic records and editors in a single batch"""
    batch = client.batch()
    now = firestore.SERVER_TIMESTAMP

    for item in traffic:
        ref = client.collection(TRAFFIC_COLLECTION).document(item["date"])
        batch.set(ref, {
            "date": item["date"],
            "visits": item["visits"],
            "createdAt": now,
            "updatedAt": now,
        }, merge=True)

    normalized = sorted({normalize_email(e) for e in editors if normalize_email(e)})
    for email in normalized:
        ref = client.collection(EDITORS_COLLECTION).document(email)
        batch.set(ref, {"email": email, "addedAt": now, "source": "seed"}, merge=True)

    batch.commit()
    return {"traffic": len(traffic), "editors": len(normalized)}


@app.command()
def main(
        editor: Optional[List[str]] = typer.Option(None, "--editor", help="Editor email; repeat for several (or set SEED_EDITORS)"),
        project: Optional[str] = typer.Option(FIREBASE_PROJECT_ID, help="Firebase / GCP project id"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print what would be written and exit"),
):
    """Seed trafficStats + editors."""
    traffic = demo_traffic()
    editors = list(editor or []) or editors_from_env()

    if dry_run:
        typer.echo(f"Would seed {len(traffic)} {TRAFFIC_COLLECTION} docs "
                   f"({traffic[0]['date']} .. {traffic[-1]['date']}).")
        for email in editors:
            typer.echo(f"Would seed editor {normalize_email(email)}")
        return

    typer.echo(f"Seeding {TRAFFIC_COLLECTION} + {EDITORS_COLLECTION}...")
    try:
        counts = seed(firestore.Client(project=project), traffic, editors)
    except Exception as e:
        logger.error("seed_failed", project_id=project, error=str(e))
        typer.echo(f"Seeding failed: {e}", err=True)
        raise typer.Exit(code=1)

    logger.info("seed_completed", project_id=project, **counts)
    typer.echo(f"Seeded {counts['traffic']} {TRAFFIC_COLLECTION} docs.")
    typer.echo(f"Seeded {counts['editors']} editors.")


if __name__ == "__main__":
    app()
