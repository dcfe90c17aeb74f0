import argparse
import asyncio

from sqlalchemy import select

from app.core.config import settings
from app.db.session import SessionLocal
from app.models.collection import Collection
from app.models.post import PostImage
from app.models.user import User
from app.services.assets import PERMANENT_PREFIX, AssetManager, CleanupPlan, extract_key
from app.services.object_store import S3ObjectStore


async def collect_referenced_keys(store: S3ObjectStore) -> set[str]:
    keys: set[str] = set()
    async with SessionLocal() as session:
        for column in (PostImage.url, Collection.cover_image_url, User.avatar_url):
            for url in (await session.execute(select(column).where(column.is_not(None)))).scalars().all():
                if url and store.owns(url):
                    keys.add(extract_key(url))
    return keys


def walk_permanent(store: S3ObjectStore) -> set[str]:
    return set(store.iter_keys(PERMANENT_PREFIX))


async def main(trash: bool) -> None:
    store = S3ObjectStore.from_settings(settings)
    referenced = await collect_referenced_keys(store)
    existing = await asyncio.to_thread(walk_permanent, store)
    orphans = existing - referenced
    if not orphans:
        print("No orphaned uploads found.")
        return
    print(f"Found {len(orphans)} orphaned uploads in {store.bucket}:")
    plan = CleanupPlan()
    for key in sorted(orphans):
        print(f" - {key}")
        plan.trash(key)
    if trash:
        await AssetManager(store).run_cleanup(plan)
        print("Moved orphaned uploads to trash/.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Scan the bucket for permanent uploads no entity references.")
    parser.add_argument("--trash", action="store_true", help="Soft-delete orphaned uploads after listing")
    args = parser.parse_args()
    asyncio.run(main(args.trash))
