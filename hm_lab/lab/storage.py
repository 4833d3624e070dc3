# hm_lab/lab/storage.py
from __future__ import annotations

import os
import uuid

from django.conf import settings
from django.core.files.storage import default_storage
from django.utils import timezone
from django.utils.text import get_valid_filename


def save_report_file(uploaded_file) -> dict:
    """
    Stores an uploaded report through the default storage backend and
    returns its metadata in the shape kept on lab items.
    """
    original_name = os.path.basename(getattr(uploaded_file, "name", "") or "report")
    _, ext = os.path.splitext(original_name)
    filename = f"{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:12]}{ext.lower()}"

    upload_dir = getattr(settings, "LAB_REPORT_UPLOAD_DIR", "lab-results")
    path = default_storage.save(f"{upload_dir}/{get_valid_filename(filename)}", uploaded_file)

    return {
        "filename": os.path.basename(path),
        "originalName": original_name,
        "path": path,
        "size": getattr(uploaded_file, "size", 0) or 0,
        "contentType": getattr(uploaded_file, "content_type", "") or "",
    }


def delete_report_file(path: str) -> None:
    if path and default_storage.exists(path):
        default_storage.delete(path)
