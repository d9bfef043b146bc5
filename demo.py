"""
End-to-end demo of the dedup-guard workflow.

Creates sample duplicate images, detects them, deletes the extra copies
behind a verified backup, then restores everything from that backup.
"""

import shutil
from pathlib import Path
from tempfile import TemporaryDirectory

from PIL import Image

from dedup_guard.core.deletion import SafeImageDeleter
from dedup_guard.core.detector import DuplicateDetector
from dedup_guard.core.safety import SafetyManager
from dedup_guard.core.scanner import ImageScanner
from dedup_guard.utils.config import Config


def create_demo_images(demo_dir: Path) -> None:
    """
    Create sample images for demonstration.

    Args:
        demo_dir: Directory to create images in
    """
    print(f"Creating demo images in: {demo_dir}")

    originals_dir = demo_dir / "originals"
    originals_dir.mkdir(exist_ok=True)

    Image.new("RGB", (1920, 1080), color=(70, 130, 180)).save(
        originals_dir / "landscape_1920x1080.png"
    )
    Image.new("RGB", (800, 1200), color=(220, 20, 60)).save(
        originals_dir / "portrait_800x1200.png"
    )
    Image.new("RGB", (640, 480), color=(50, 205, 50)).save(originals_dir / "small_640x480.png")

    duplicates_dir = demo_dir / "duplicates"
    duplicates_dir.mkdir(exist_ok=True)

    # Exact copy
    shutil.copy(originals_dir / "portrait_800x1200.png", duplicates_dir / "portrait_copy.png")
    # Downscaled copy: a near duplicate
    Image.new("RGB", (1280, 720), color=(70, 130, 180)).save(
        duplicates_dir / "landscape_1280x720.png"
    )

    # Files under a protected folder are never deleted
    protected_dir = demo_dir / "Family_Photos"
    protected_dir.mkdir(exist_ok=True)
    Image.new("RGB", (320, 240), color=(50, 205, 50)).save(protected_dir / "small_copy.png")

    print("✓ Created 6 images (3 originals, 2 duplicates, 1 protected)")


def main():
    """Run the demo."""
    print("=" * 70)
    print("DEDUP-GUARD - END-TO-END DEMO")
    print("=" * 70)
    print()

    with TemporaryDirectory() as temp_dir:
        demo_dir = Path(temp_dir) / "demo"
        demo_dir.mkdir()

        print("STEP 1: Creating demo images")
        print("-" * 70)
        create_demo_images(demo_dir)
        print()

        config = Config(Path(temp_dir) / "state" / "config.json")
        config.set("safety.use_recycle_bin", False)
        config.add_protected_folder("Family_Photos")

        print("STEP 2: Scanning for images")
        print("-" * 70)
        scanner = ImageScanner(config)
        images = scanner.scan([demo_dir])
        print(f"✓ Found {len(images)} images")
        print()

        print("STEP 3: Detecting duplicates")
        print("-" * 70)
        safety = SafetyManager(config)
        detector = DuplicateDetector(config, safety=safety)
        groups = detector.find_duplicates(images)

        print(f"✓ Found {len(groups)} duplicate groups")
        for group in groups:
            print(f"\n  [{group.method.value}] similarity {group.similarity:.1%}, {group.confidence}")
            for img in group.images:
                action = "KEEP  " if img.recommended else "DELETE"
                print(f"    {action} {Path(img.path).relative_to(demo_dir)}")
        print()

        print("STEP 4: Deleting behind a verified backup")
        print("-" * 70)
        deleter = SafeImageDeleter(config, safety=safety)
        result = deleter.delete_groups(groups)
        print(f"✓ Status: {result.status.value}")
        print(f"  Deleted: {len(result.deleted)}")
        for failure in result.failed:
            print(f"  Skipped: {Path(failure['path']).name} ({failure['error']})")
        print(f"  Backup:  {result.backup_id}")
        print()

        print("STEP 5: Restoring from the backup")
        print("-" * 70)
        if result.backup_id:
            restored = safety.restore(result.backup_id)
            print(f"✓ Restored {len(restored.restored)} files")
            check = safety.verify_backup(result.backup_id)
            print(f"  Backup still valid: {check['valid']}")
        else:
            print("  Nothing was deleted, nothing to restore")
        print()

        print("=" * 70)


if __name__ == "__main__":
    main()
