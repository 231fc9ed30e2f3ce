"""URL-safe names for files and folders and de-duplication among siblings."""
import re
from typing import Iterable


def generate_slug(text: str) -> str:
    """
    Lowercase, spaces to hyphens, drop everything except word chars, hyphens and dots,
    collapse repeated hyphens, trim hyphens at both ends.
    """
    slug = str(text).lower().strip()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^\w\-.]", "", slug, flags=re.ASCII)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def sanitize_file_name(file_name: str) -> str:
    """Slugs the base name and keeps the extension (lowercased, word chars only)."""
    dot = file_name.rfind(".")
    if dot <= 0:
        return generate_slug(file_name)

    base = generate_slug(file_name[:dot])
    ext = re.sub(r"[^\w]", "", file_name[dot + 1:].lower(), flags=re.ASCII)
    return f"{base}.{ext}" if ext else base


def generate_unique_slug(base_slug: str, existing: Iterable[str]) -> str:
    """Appends -1, -2, ... before the extension until the slug is free."""
    taken = set(existing)
    if base_slug not in taken:
        return base_slug

    dot = base_slug.rfind(".")
    if dot > 0:
        stem, ext = base_slug[:dot], base_slug[dot:]
    else:
        stem, ext = base_slug, ""

    counter = 1
    while f"{stem}-{counter}{ext}" in taken:
        counter += 1
    return f"{stem}-{counter}{ext}"


def unique_file_slug(file_name: str, existing: Iterable[str]) -> str:
    return generate_unique_slug(sanitize_file_name(file_name) or "file", existing)


def unique_folder_slug(folder_name: str, existing: Iterable[str]) -> str:
    return generate_unique_slug(generate_slug(folder_name) or "folder", existing)
