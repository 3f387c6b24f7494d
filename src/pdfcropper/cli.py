from pathlib import Path

import typer

from .config import Settings
from .logging import get_logger
from .overlays.store import OverlayStore
from .output.archive import ArchiveError, ArchiveMode, read_archive
from .output.assembler import ExportAssembler
from .output.manifest import ManifestError, descriptors_from_tree, load_manifest_json
from .pdf.engine import EngineUnavailableError, load_engine
from .pdf.ingestion import DocumentLoadError, EncryptedPdfError, RenderError
from .pdf.raster import RasterService
from .worker.client import RasterWorker

app = typer.Typer(help="pdfcropper – crop question regions from PDFs into export archives", no_args_is_help=True)


def safe_echo(message: str) -> None:
    """Echo message with an ASCII fallback for consoles that cannot encode it."""
    try:
        typer.echo(message)
    except UnicodeEncodeError:
        typer.echo(message.replace("§", "/").replace("✅", "[OK]").replace("📦", "[ZIP]")
                   .encode("ascii", "replace").decode("ascii"))


def _read_pdf(pdf_path: Path) -> bytes:
    with open(pdf_path, "rb") as f:
        return f.read()


def _open_service(settings: Settings, pdf_path: Path) -> RasterService:
    service = RasterService(load_engine(settings.engine_modules))
    service.open_document(_read_pdf(pdf_path))
    return service


@app.command()
def info(
    pdf_path: Path = typer.Argument(..., exists=True, readable=True, help="Path to the PDF file"),
) -> None:
    """Show page count and point-space page sizes."""
    logger = get_logger(__name__)
    settings = Settings()

    try:
        service = _open_service(settings, pdf_path)
    except EncryptedPdfError as exc:
        logger.error(f"Cannot process encrypted PDF: {exc}")
        raise typer.Exit(code=2) from exc
    except (DocumentLoadError, EngineUnavailableError) as exc:
        logger.error(f"Failed to open PDF: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        safe_echo(f"📄 {pdf_path}")
        safe_echo(f"Pages: {service.page_count()}")
        safe_echo(f"SHA-256: {service.document.sha256}")
        for page, (width, height) in service.all_page_dimensions().items():
            safe_echo(f"   page {page}: {width:g} x {height:g} pt")
    finally:
        service.close()


@app.command()
def render(
    pdf_path: Path = typer.Argument(..., exists=True, readable=True, help="Path to the PDF file"),
    page: int = typer.Option(1, "--page", "-p", help="1-based page number"),
    scale: float = typer.Option(1.0, "--scale", "-s", help="Render scale (1.0 = 72 dpi)"),
    out: Path = typer.Option(Path("page.png"), "--out", "-o", help="PNG file to write"),
    transparent: bool = typer.Option(False, "--transparent/--opaque", help="Render with an alpha channel"),
) -> None:
    """Render one page to a PNG preview."""
    logger = get_logger(__name__)

    try:
        settings = Settings(preview_scale=scale, transparent=transparent)
    except ValueError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc

    try:
        service = _open_service(settings, pdf_path)
    except EncryptedPdfError as exc:
        logger.error(f"Cannot process encrypted PDF: {exc}")
        raise typer.Exit(code=2) from exc
    except (DocumentLoadError, EngineUnavailableError) as exc:
        logger.error(f"Failed to open PDF: {exc}")
        raise typer.Exit(code=1) from exc

    try:
        png = service.render_page_png(None, page, settings.preview_scale, settings.transparent,
                                      compress_level=settings.png_compress_level)
    except RenderError as exc:
        logger.error(f"Failed to render page {page}: {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        service.close()

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(png)
    safe_echo(f"✅ Rendered page {page} at scale {scale:g} -> {out}")


@app.command()
def export(
    pdf_path: Path = typer.Argument(..., exists=True, readable=True, help="Source PDF"),
    data_json: Path = typer.Argument(..., exists=True, readable=True, help="Manifest or export-tree JSON with the regions"),
    out: Path = typer.Option(Path("output/export.zip"), "--out", "-o", help="Archive to write"),
    mode: ArchiveMode = typer.Option(ArchiveMode.EMBED_SOURCE_DOCUMENT, "--mode", "-m", help="Embed the source PDF or per-region images"),
    scale: float = typer.Option(2.0, "--scale", "-s", help="Render scale for region images"),
) -> None:
    """
    Export the regions listed in DATA_JSON as an archive.

    In image mode every region is cropped on the raster worker and progress is
    reported per question. Any failed region aborts the export.
    """
    logger = get_logger(__name__)

    try:
        settings = Settings(scale=scale)
        tree, _ = load_manifest_json(data_json)
        store = OverlayStore(min_dimension=settings.min_crop_dimension)
        store.load(descriptors_from_tree(tree))
    except (ValueError, ManifestError) as exc:
        # InvalidRegionError is a ValueError
        logger.error(f"Failed to load regions from {data_json}: {exc}")
        raise typer.Exit(code=1) from exc

    source = _read_pdf(pdf_path)
    logger.info(f"Loaded {len(store)} regions ({tree.question_count} questions) from {data_json}")

    def report(progress) -> None:
        safe_echo(f"   [{progress.completed}/{progress.total}] {progress.question_key}")

    try:
        if mode is ArchiveMode.EMBED_SOURCE_DOCUMENT:
            # Refuse to embed a document that cannot be opened
            RasterService(load_engine(settings.engine_modules)).open_document(source).close()
            archive = ExportAssembler(settings).export(store, mode, source_document=source)
        else:
            with RasterWorker(settings) as worker:
                worker.open_document(source).result()
                archive = ExportAssembler(settings, worker=worker).export(
                    store, mode, source_document=source, progress=report,
                )
    except EncryptedPdfError as exc:
        logger.error(f"Cannot process encrypted PDF: {exc}")
        raise typer.Exit(code=2) from exc
    except (DocumentLoadError, EngineUnavailableError) as exc:
        logger.error(f"Failed to open PDF: {exc}")
        raise typer.Exit(code=1) from exc
    except ArchiveError as exc:
        logger.error(f"Export failed: {exc}")
        raise typer.Exit(code=1) from exc

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(archive)
    safe_echo("\n✅ Export complete!")
    safe_echo(f"📦 Archive: {out} ({mode.value} mode, {len(archive)} bytes)")
    safe_echo(f"Questions: {tree.question_count}, images: {tree.image_count}")


@app.command()
def inspect(
    archive_path: Path = typer.Argument(..., exists=True, readable=True, help="Archive to read"),
) -> None:
    """Read an archive back and summarise it per section."""
    logger = get_logger(__name__)

    try:
        imported = read_archive(archive_path.read_bytes())
    except ArchiveError as exc:
        logger.error(f"Failed to read archive: {exc}")
        raise typer.Exit(code=1) from exc

    tree = imported.tree
    safe_echo(f"📦 {archive_path}")
    safe_echo(f"Mode: {imported.mode.value}")
    if imported.app_version:
        safe_echo(f"App version: {imported.app_version}")
    if "pdfFileHash" in imported.test_config:
        safe_echo(f"PDF hash: {imported.test_config['pdfFileHash']}")
    safe_echo(f"Questions: {tree.question_count}, images: {tree.image_count}")
    for subject, sections in tree.subjects.items():
        safe_echo(f"{subject}")
        for section, questions in sections.items():
            images = sum(len(q.pdf_data) for q in questions.values())
            safe_echo(f"   {section}: {len(questions)} questions, {images} images")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
