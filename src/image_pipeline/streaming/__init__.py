# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Streaming large response bodies directly into storage."""

from .upload import SizeCappedStream, StreamingUploader, parse_content_length, should_stream

__all__ = [
    "SizeCappedStream",
    "StreamingUploader",
    "parse_content_length",
    "should_stream",
]
