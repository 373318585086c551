import sys

from backstage.config import Settings
from backstage.db import build_engine, make_session_factory
from backstage.documents import find_orphaned_blobs, remove_orphaned_blobs
from backstage.logging_setup import configure_logging
from backstage.storage import LocalObjectStore


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)

    db = make_session_factory(build_engine(settings.database_url))()
    store = LocalObjectStore(settings.upload_dir)
    try:
        if "--delete" in argv:
            removed = remove_orphaned_blobs(db, store)
            print(f"Removed {len(removed)} orphaned blobs.")
            for key in removed:
                print(f"  {key}")
        else:
            orphans = find_orphaned_blobs(db, store)
            print(f"Found {len(orphans)} orphaned blobs.")
            for key in orphans:
                print(f"  {key}")
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
