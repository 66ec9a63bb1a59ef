import asyncio
import csv
import io

import pandas as pd
from docx import Document
from pptx import Presentation
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from backend.app.module.Functions_module import setup_logger

logger = setup_logger()

SUPPORTED_EXTENSIONS = ('.txt', '.md', '.csv', '.pdf', '.docx', '.pptx')

_W_NS = '{http://schemas.openxmlformats.org/wordprocessingml/2006/main}'
_R_NS = '{http://schemas.openxmlformats.org/officeDocument/2006/relationships}'


class UnsupportedDocumentError(ValueError):
    """Raised for file types the parser cannot extract text from."""


class EmptyDocumentError(ValueError):
    """Raised when a supported file yields no text."""


class ParserService:
    """Service responsible for extracting text (and links) from uploaded files.

    Requirement documents, user stories and exported test plans are the usual
    inputs; the extracted text feeds the chunker and the vector store.
    """

    def __init__(self):
        self.logger = logger

    def parse_content(self, filename: str, content: bytes) -> str:
        lower = (filename or '').lower()
        if not lower.endswith(SUPPORTED_EXTENSIONS):
            raise UnsupportedDocumentError(
                f"Unsupported file type for {filename}; expected one of {', '.join(SUPPORTED_EXTENSIONS)}"
            )

        if lower.endswith(('.txt', '.md')):
            text = content.decode('utf-8', errors='replace')
        elif lower.endswith('.csv'):
            text = self._parse_csv(filename, content)
        elif lower.endswith('.pdf'):
            text = self._parse_pdf(filename, content)
        elif lower.endswith('.docx'):
            text = self._parse_docx(content)
        else:
            text = self._parse_pptx(content)

        if not text or not text.strip():
            raise EmptyDocumentError(f"No text could be extracted from {filename}")
        return text

    def _parse_csv(self, filename: str, content: bytes) -> str:
        s = content.decode('utf-8', errors='replace')
        # Exports often carry a preamble ("Sheet: ...") before the header row
        lines = s.splitlines()
        start = next((i for i, line in enumerate(lines) if ';' in line or ',' in line), 0)
        csv_text = '\n'.join(lines[start:])
        sep = ';' if ';' in csv_text else ','
        try:
            df = pd.read_csv(io.StringIO(csv_text), sep=sep)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            self.logger.warning('pandas could not read {} ({}); using csv reader', filename, e)
            rows = list(csv.reader(io.StringIO(s)))
            return '\n'.join(', '.join(row) for row in rows)

        out = [f"**Data from {filename}**", ""]
        for _, row in df.iterrows():
            cells = [f"{col}: {row[col]}" for col in df.columns if pd.notna(row[col])]
            out.append(' | '.join(cells))
        return '\n'.join(out)

    def _parse_pdf(self, filename: str, content: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(content))
        except PdfReadError as e:
            raise EmptyDocumentError(f"Could not read PDF {filename}: {e}") from e

        text_parts = []
        links = []
        for page_no, page in enumerate(reader.pages, start=1):
            page_text = page.extract_text() or ''
            if page_text.strip():
                text_parts.append(page_text)

            for annot in page.get('/Annots') or []:
                obj = annot.get_object()
                if obj.get('/Subtype') != '/Link' or '/A' not in obj:
                    continue
                action = obj['/A']
                if action.get('/S') == '/URI' and '/URI' in action:
                    links.append(f"Link (page {page_no}): {action['/URI']}")

        combined = '\n'.join(text_parts)
        if links:
            combined += '\n\n**Links from PDF document:**\n' + '\n'.join(f"- {l}" for l in links)
        return combined

    def _parse_docx(self, content: bytes) -> str:
        doc = Document(io.BytesIO(content))
        parts = [p.text.strip() for p in doc.paragraphs if p.text and p.text.strip()]

        hyperlink_targets = {
            rel.rId: rel.target_ref for rel in doc.part.rels.values() if 'hyperlink' in rel.reltype
        }
        links = []
        for paragraph in doc.paragraphs:
            for hyperlink in paragraph._element.findall(f'.//{_W_NS}hyperlink'):
                url = hyperlink_targets.get(hyperlink.get(f'{_R_NS}id'))
                link_text = ''.join(node.text for node in hyperlink.iter() if node.text).strip()
                if url and link_text:
                    links.append((link_text, url))
        if links:
            parts.append('\n**Links from document:**\n' + '\n'.join(f"- {t}: {u}" for t, u in links))

        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(' | '.join(cells))

        return '\n'.join(parts)

    def _parse_pptx(self, content: bytes) -> str:
        prs = Presentation(io.BytesIO(content))
        text = ''
        for slide_num, slide in enumerate(prs.slides, 1):
            text += f"\n--- Slide {slide_num} ---\n"
            for shape in slide.shapes:
                shape_text = getattr(shape, "text", None)
                if shape_text:
                    text += shape_text + "\n"
        return text


# Single shared parser instance
parser_service = ParserService()


async def parse_content(filename: str, content: bytes) -> str:
    """Run the blocking parser in a worker thread."""
    return await asyncio.to_thread(parser_service.parse_content, filename, content)
