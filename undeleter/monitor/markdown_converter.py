"""Render deletion records as readable Markdown."""

import re
from datetime import datetime
from typing import List, Optional

from undeleter.models.tracked import DeletionReason, DeletionRecord

PREVIEW_LENGTH = 50


class DeletionToMarkdownConverter:
    """Converts deletion records to Markdown documents and log entries."""

    def convert_record_to_markdown(self, record: DeletionRecord) -> str:
        """Full document for one deleted message."""
        md_content = []

        md_content.append(f"# {self._title(record)}")
        md_content.append("")

        md_content.append("## Metadata")
        md_content.append("")
        md_content.append("| Field | Value |")
        md_content.append("|-------|-------|")
        md_content.extend(self._metadata_rows(record))
        md_content.append(f"| **GUID** | `{record.guid}` |")
        md_content.append(f"| **Detected** | {self._format_date(record.detected_at)} (cycle {record.detected_cycle}) |")
        md_content.append(f"| **Record ID** | `{record.record_id}` |")
        md_content.append("")

        md_content.append("## Content")
        md_content.append("")
        md_content.append(self._format_text(record.text))

        if record.attachments:
            md_content.append("")
            md_content.append("## Attachments")
            md_content.append("")
            md_content.extend(self._attachment_lines(record, detailed=True))

        md_content.append("")
        md_content.append("---")
        md_content.append(f"*Recorded: {self._format_date(record.detected_at)}*")
        md_content.append("")

        return '\n'.join(md_content)

    def convert_record_to_log_entry(self, record: DeletionRecord, document_path: Optional[str] = None) -> str:
        """Short entry appended to the running deletion log."""
        md_content = []
        md_content.append(f"## {self._format_date(record.detected_at)} - {self._title(record)}")
        md_content.append("")
        md_content.append("| Field | Value |")
        md_content.append("|-------|-------|")
        md_content.extend(self._metadata_rows(record))
        if document_path:
            md_content.append(f"| **Document** | `{document_path}` |")
        md_content.append("")
        md_content.append(self._quote(self._format_text(record.text)))

        if record.attachments:
            md_content.append("")
            md_content.extend(self._attachment_lines(record, detailed=False))

        md_content.append("")
        md_content.append("")
        return '\n'.join(md_content)

    def preview(self, text: Optional[str]) -> str:
        """First characters of a message for console alerts."""
        if not text:
            return ""
        flattened = " ".join(text.split())
        if len(flattened) <= PREVIEW_LENGTH:
            return flattened
        return flattened[:PREVIEW_LENGTH] + "..."

    def _title(self, record: DeletionRecord) -> str:
        if record.reason == DeletionReason.UNSENT:
            return "Unsent message"
        return "Deleted message"

    def _metadata_rows(self, record: DeletionRecord) -> List[str]:
        return [
            f"| **From** | {self._escape_markdown(record.sender)} |",
            f"| **Conversation** | {self._escape_markdown(record.scope_key)} |",
            f"| **Sent** | {self._format_date(record.timestamp)} |",
            f"| **Reason** | {record.reason.value} |",
            f"| **Message ROWID** | {record.message_id} |",
        ]

    def _attachment_lines(self, record: DeletionRecord, detailed: bool) -> List[str]:
        lines = []
        for i, attachment in enumerate(record.attachments, 1):
            if attachment.recovered:
                location = f"saved to `{attachment.path}`"
            else:
                location = f"**unrecoverable** ({attachment.error or 'unknown reason'})"

            if not detailed:
                lines.append(f"- {attachment.display_name}: {location}")
                continue

            lines.append(f"### {i}. {attachment.display_name}")
            lines.append("")
            lines.append(f"- **Type**: {attachment.content_kind}")
            lines.append(f"- **Original path**: `{attachment.original_path or 'unknown'}`")
            lines.append(f"- **Status**: {location}")
            lines.append("")
        return lines

    def _format_text(self, text: Optional[str]) -> str:
        """Keep intentional line breaks, drop runs of blank lines."""
        if not text:
            return "*(no text)*"

        formatted_lines = []
        for line in text.split('\n'):
            stripped = line.rstrip()
            if stripped:
                formatted_lines.append(stripped)
            elif formatted_lines and formatted_lines[-1] != '':
                formatted_lines.append('')

        return '\n'.join(formatted_lines).strip() or "*(no text)*"

    def _quote(self, text: str) -> str:
        return '\n'.join(f"> {line}" if line else ">" for line in text.split('\n'))

    def _format_date(self, value: Optional[datetime]) -> str:
        if value is None:
            return "unknown"
        return value.strftime('%Y-%m-%d %H:%M:%S UTC')

    def _escape_markdown(self, text: str) -> str:
        """Escape Markdown special characters."""
        if not text:
            return ""
        special_chars = r'[\*\_\[\]\(\)\~\`\>\#\+\-\=\|\{\}\.!]'
        return re.sub(special_chars, r'\\\g<0>', text)
