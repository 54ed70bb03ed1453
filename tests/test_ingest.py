import pytest

from ghost_librarian import ingest
from ghost_librarian.errors import DuplicateDocument, EmbeddingUnavailable, UnsupportedDocument
from ghost_librarian.ingest import Ingestor, ParagraphSplitter, read_document
from ghost_librarian.models import DuplicatePolicy
from ghost_librarian.pipeline import ContextDistiller


def test_read_document_rejects_unsupported_types(tmp_path):
    path = tmp_path / "paper.docx"
    path.write_bytes(b"PK\x03\x04")

    with pytest.raises(UnsupportedDocument):
        read_document(path)


def test_read_document_reads_markdown(tmp_path):
    path = tmp_path / "notes.MD"
    path.write_text("# Title\n\nBody", encoding="utf-8")

    assert read_document(path) == "# Title\n\nBody"


def test_splitter_packs_short_paragraphs_together():
    text = "First paragraph.\n\nSecond paragraph.\n\n\n\nThird paragraph."

    fragments = ParagraphSplitter(chunk_size=40).split(text)

    assert fragments == [("First paragraph.\n\nSecond paragraph.", 0), ("Third paragraph.", 1)]


def test_splitter_breaks_long_paragraphs_on_sentences_then_words():
    sentence = "The quick brown fox jumps over the lazy dog."
    long_word = "x" * 130
    text = " ".join([sentence] * 6) + "\n\n" + long_word

    fragments = ParagraphSplitter(chunk_size=100).split(text)

    assert all(len(fragment) <= 100 for fragment, _ in fragments)
    assert [position for _, position in fragments] == list(range(len(fragments)))
    joined = " ".join(fragment for fragment, _ in fragments)
    assert joined.count("fox") == 6
    assert joined.replace(" ", "").count("x") >= 130


def test_ingest_text_embeds_in_batches_and_commits_once(store, embedder):
    text = "\n\n".join(f"Paragraph {index} about the blue sky." for index in range(5))
    ingestor = Ingestor(store, embedder, ParagraphSplitter(chunk_size=40), batch_size=2)

    report = ingestor.ingest_text("sky.md", text)

    assert report.document_id == "sky.md"
    assert report.chunk_count == 5
    assert [len(batch) for batch in embedder.calls] == [2, 2, 1]
    assert [chunk.position for chunk in store.get_document("sky.md")] == [0, 1, 2, 3, 4]
    assert report.token_estimate == sum(chunk.token_estimate for chunk in store.get_document("sky.md"))


def test_ingest_file_uses_file_name_as_document_id(tmp_path, store, embedder):
    path = tmp_path / "sky.txt"
    path.write_text("The sky is blue.\x00\n\n  The grass   is green.  ", encoding="utf-8")

    report = Ingestor(store, embedder).ingest_file(path)

    assert report.document_id == "sky.txt"
    assert store.get_document("sky.txt")[0].text == "The sky is blue.\n\nThe grass is green."


def test_ingest_respects_duplicate_policy(store, embedder):
    ingestor = Ingestor(store, embedder)
    ingestor.ingest_text("sky.md", "The sky is blue.")

    with pytest.raises(DuplicateDocument):
        ingestor.ingest_text("sky.md", "The sky is grey.", policy=DuplicatePolicy.REJECT)

    ingestor.ingest_text("sky.md", "The sky is grey.")
    assert [chunk.text for chunk in store.get_document("sky.md")] == ["The sky is grey."]


def test_empty_documents_are_rejected(store, embedder):
    with pytest.raises(UnsupportedDocument):
        Ingestor(store, embedder).ingest_text("blank.md", " \n\t\n ")


def test_embedding_failure_leaves_store_untouched(store):
    class BrokenEmbedder:
        dimension = 10

        def embed_batch(self, texts):
            raise EmbeddingUnavailable("offline")

    with pytest.raises(EmbeddingUnavailable):
        Ingestor(store, BrokenEmbedder()).ingest_text("sky.md", "The sky is blue.")

    assert len(store) == 0


class FakePage:
    def __init__(self, text):
        self._text = text

    def extract_text(self):
        return self._text


class FakePdf:
    def __init__(self, pages):
        self.pages = [FakePage(text) for text in pages]
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True


class FakePdfplumber:
    def __init__(self, pages):
        self.pages = pages
        self.opened = []

    def open(self, path):
        self.opened.append(path)
        return FakePdf(self.pages)


def test_read_document_extracts_pdf_pages(tmp_path, monkeypatch):
    fake = FakePdfplumber(["The sky is blue.", None, "  ﬁne print  "])
    monkeypatch.setattr(ingest, "pdfplumber", fake)
    path = tmp_path / "paper.PDF"
    path.write_bytes(b"%PDF-1.7")

    assert read_document(path) == "The sky is blue.\n\nfine print"
    assert fake.opened == [path]


def test_scanned_pdf_without_text_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setattr(ingest, "pdfplumber", FakePdfplumber([None, "   "]))
    path = tmp_path / "scan.pdf"
    path.write_bytes(b"%PDF-1.7")

    with pytest.raises(UnsupportedDocument, match="no extractable text"):
        read_document(path)


def test_pdf_parser_errors_become_unsupported_document(tmp_path, monkeypatch):
    class BrokenPdfplumber:
        def open(self, path):
            raise RuntimeError("xref table not found")

    monkeypatch.setattr(ingest, "pdfplumber", BrokenPdfplumber())
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"garbage")

    with pytest.raises(UnsupportedDocument, match="xref table not found"):
        read_document(path)


def test_pdf_without_pdfplumber_installed_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setattr(ingest, "pdfplumber", None)
    path = tmp_path / "paper.pdf"
    path.write_bytes(b"%PDF-1.7")

    with pytest.raises(UnsupportedDocument, match="pdfplumber"):
        read_document(path)


def test_ingest_file_indexes_pdf_text(tmp_path, monkeypatch, store, embedder):
    monkeypatch.setattr(ingest, "pdfplumber", FakePdfplumber(["# Not a heading in a PDF", "Grass is green."]))
    path = tmp_path / "paper.pdf"
    path.write_bytes(b"%PDF-1.7")

    report = Ingestor(store, embedder).ingest_file(path)

    assert report.document_id == "paper.pdf"
    assert [chunk.section for chunk in store.get_document("paper.pdf")] == [None]


def test_markdown_headings_become_chunk_sections(tmp_path, store, embedder):
    path = tmp_path / "guide.md"
    path.write_text(
        "Intro paragraph.\n\n# Setup\n\nInstall the sky package.\n\n## Colors ##\n\nThe sky is blue.",
        encoding="utf-8",
    )

    Ingestor(store, embedder, ParagraphSplitter(chunk_size=2000)).ingest_file(path)

    chunks = store.get_document("guide.md")
    assert [(chunk.section, chunk.text) for chunk in chunks] == [
        (None, "Intro paragraph."),
        ("Setup", "# Setup\n\nInstall the sky package."),
        ("Colors", "## Colors ##\n\nThe sky is blue."),
    ]
    assert [chunk.position for chunk in chunks] == [0, 1, 2]


def test_plain_text_files_keep_hash_lines_as_text(tmp_path, store, embedder):
    path = tmp_path / "notes.txt"
    path.write_text("# not a heading\n\nThe sky is blue.", encoding="utf-8")

    Ingestor(store, embedder).ingest_file(path)

    assert [chunk.section for chunk in store.get_document("notes.txt")] == [None]


def test_sections_reach_the_packed_context(store, embedder):
    Ingestor(store, embedder).ingest_text("guide.md", "# Colors\n\nThe sky is blue.")

    result = ContextDistiller(store, embedder).distill("sky color")

    assert result.context.startswith("[guide.md | Colors] ")
