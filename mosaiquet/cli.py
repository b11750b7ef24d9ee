#!/usr/bin/env python3
"""mosaiquet CLI - Tools for building and querying raster mosaic catalogs

A mosaic is a directory of raster files indexed into a Parquet granule
catalog, one coverage per Parquet file.
"""

import json
import logging
import sys
from pathlib import Path

import click

from .configuration import IndexerConfiguration
from .dimensions import Range
from .events import EventDispatcher, FileProcessingEvent, FileStatus
from .filters import parse_filter
from .geometry import Envelope
from .mosaic import UNSPECIFIED, MosaicReader, ReadParameters
from .schema import to_datetime


# Configure logging
def setup_logging(verbose: bool):
    """Configure logging based on verbosity."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
        )


def _fail(e: Exception, verbose: bool):
    click.echo(f"Error: {e}", err=True)
    if verbose:
        import traceback
        traceback.print_exc()
    sys.exit(1)


def _formats(ctx: click.Context):
    """Format registry injected through the context object, if any"""
    if isinstance(ctx.obj, dict):
        return ctx.obj.get("formats")
    return None


def _parse_numbers(text: str | None, count: int, what: str) -> list[float] | None:
    if text is None:
        return None
    try:
        values = [float(v) for v in text.split(",")]
    except ValueError:
        raise click.BadParameter(f"{what} must be {count} comma separated numbers") from None
    if len(values) != count:
        raise click.BadParameter(f"{what} must be {count} comma separated numbers")
    return values


def _parse_value(text: str, convert):
    """Single value, or a Range written as "start/end" """
    if text is None:
        return None
    if "/" in text:
        start, end = text.split("/", 1)
        return Range(convert(start), convert(end))
    return convert(text)


def _number_or_text(text: str):
    try:
        return float(text)
    except ValueError:
        return text


def _open_mosaic(ctx: click.Context, root: Path, max_tiles: int | None = None) -> MosaicReader:
    if max_tiles is not None:
        return MosaicReader.open(root, formats=_formats(ctx), max_allowed_tiles=max_tiles)
    return MosaicReader.open(root, formats=_formats(ctx))


@click.group()
@click.version_option(package_name="mosaiquet")
def cli():
    """mosaiquet CLI - Tools for building and querying raster mosaic catalogs.

    \b
    Examples:
        mosaiquet index /data/sst --time-attribute time
        mosaiquet harvest /data/sst /incoming/sst_20240101.tif
        mosaiquet inspect /data/sst
        mosaiquet query /data/sst --bbox -10,30,10,50 --time 2024-01-01
        mosaiquet domain /data/sst TIME --limit 10
    """
    pass


@cli.command("index")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--name", help="Coverage name for plain rasters (default: directory name)")
@click.option("--wildcard", help="File name pattern(s), comma separated (default: *.*)")
@click.option("--recursive/--no-recursive", default=None, help="Descend into subdirectories")
@click.option("--absolute-path", is_flag=True, help="Store absolute file paths")
@click.option("--location-attribute", help="Catalog attribute holding file paths")
@click.option("--time-attribute", help="Time attribute, or start;end for ranges")
@click.option("--elevation-attribute", help="Elevation attribute, or start;end for ranges")
@click.option("--additional-domains", help="Custom dimensions, e.g. 'wavelength,date(start;end)'")
@click.option("--schema", help="Catalog schema, e.g. '*the_geom:Polygon,location:String,time:Date'")
@click.option("--collectors", help="Properties collectors, e.g. 'Timestamp[regex=[0-9]{8}](time)'")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def index_command(
    ctx: click.Context,
    root: Path,
    name: str | None,
    wildcard: str | None,
    recursive: bool | None,
    absolute_path: bool,
    location_attribute: str | None,
    time_attribute: str | None,
    elevation_attribute: str | None,
    additional_domains: str | None,
    schema: str | None,
    collectors: str | None,
    verbose: bool,
):
    """Index the raster files of a mosaic directory.

    ROOT is the mosaic directory. Settings default to ROOT/indexer.properties
    when that file exists.

    \b
    Examples:
        mosaiquet index /data/sst
        mosaiquet index /data/dem --wildcard '*.tif' --no-recursive
    """
    setup_logging(verbose)

    try:
        configuration = IndexerConfiguration.load(
            root,
            index_name=name,
            wildcard=wildcard,
            recursive=recursive,
            absolute_path=absolute_path or None,
            location_attribute=location_attribute,
            time_attribute=time_attribute,
            elevation_attribute=elevation_attribute,
            additional_domain_attributes=additional_domains,
            schema=schema,
            property_collectors=collectors,
        )
        dispatcher = EventDispatcher()

        def report(event):
            if isinstance(event, FileProcessingEvent) and event.status != FileStatus.INGESTED:
                click.echo(f"  {event.status}: {event.message}")

        dispatcher.add_listener(report)

        click.echo(f"Indexing {root}...")
        with _open_mosaic(ctx, root) as mosaic:
            result = mosaic.index(configuration, dispatcher)
            result.raise_for_status()
            click.echo(str(result))
            for coverage_name in mosaic.coverage_names:
                count = mosaic.catalog.count(coverage_name)
                click.echo(f"  {coverage_name}: {count} granules")

    except Exception as e:
        _fail(e, verbose)


@cli.command("harvest")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("sources", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--coverage", default=UNSPECIFIED, help="Target coverage (default: the only one)")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def harvest_command(ctx: click.Context, root: Path, sources: tuple[Path, ...], coverage: str, verbose: bool):
    """Add raster files or directories to an existing mosaic.

    ROOT is the mosaic directory, SOURCES are files or directories.
    Each file is committed on its own.

    \b
    Examples:
        mosaiquet harvest /data/sst /incoming/sst_20240101.tif
        mosaiquet harvest /data/sst /incoming/ --coverage sst
    """
    setup_logging(verbose)

    try:
        failed = 0
        with _open_mosaic(ctx, root) as mosaic:
            for source in sources:
                for harvested in mosaic.harvest(source, coverage):
                    click.echo(f"{harvested.status}: {harvested.path}")
                    if not harvested.success:
                        click.echo(f"  {harvested.message}")
                    failed += harvested.status == FileStatus.FAILED
        if failed:
            click.echo(f"Error: {failed} file(s) failed", err=True)
            sys.exit(1)

    except Exception as e:
        _fail(e, verbose)


@cli.command("inspect")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def inspect_command(ctx: click.Context, root: Path, verbose: bool):
    """Display the coverages of a mosaic.

    ROOT is the mosaic directory.

    \b
    Examples:
        mosaiquet inspect /data/sst
    """
    setup_logging(verbose)

    try:
        # Try rich import for nice output
        from rich.console import Console
        from rich.table import Table

        console = Console()
        use_rich = True
    except ImportError:
        use_rich = False

    try:
        with _open_mosaic(ctx, root) as mosaic:
            if not mosaic.coverage_names:
                click.echo(f"No coverages in {root}")
                return

            for name in mosaic.coverage_names:
                configuration = mosaic.get_configuration(name)
                envelope = mosaic.get_original_envelope(name)
                rows = [
                    ("Granules", str(mosaic.catalog.count(name))),
                    ("Envelope", envelope.format()),
                    ("Levels", str(configuration.levels_num)),
                    ("Finest Resolution", "{!r} x {!r}".format(*configuration.levels[0])),
                    ("Heterogeneous", str(configuration.heterogeneous)),
                    ("Expand To RGB", str(configuration.expand_to_rgb)),
                    ("Format", configuration.suggested_format or "N/A"),
                ]
                dimensions = []
                for descriptor in mosaic.get_dimension_descriptors(name):
                    domain = mosaic.get_dimension_domain(descriptor.name, name)
                    dimensions.append(
                        (
                            descriptor.name,
                            ";".join(descriptor.attributes),
                            str(domain.get_size()),
                            str(domain.get_minimum()),
                            str(domain.get_maximum()),
                        )
                    )

                if use_rich:
                    console.print(f"\n[bold blue]Coverage:[/bold blue] {name}")
                    info_table = Table(title="General Information", show_header=False)
                    info_table.add_column("Property", style="cyan")
                    info_table.add_column("Value")
                    for row in rows:
                        info_table.add_row(*row)
                    console.print(info_table)

                    if dimensions:
                        dims_table = Table(title=f"Dimensions ({len(dimensions)} total)")
                        for column in ("Name", "Attributes", "Size", "Minimum", "Maximum"):
                            dims_table.add_column(column)
                        for row in dimensions:
                            dims_table.add_row(*row)
                        console.print(dims_table)
                    if verbose and configuration.crs:
                        console.print(f"[dim]CRS: {configuration.crs}[/dim]")
                else:
                    click.echo(f"\nCoverage: {name}")
                    for key, value in rows:
                        click.echo(f"  {key}: {value}")
                    if dimensions:
                        click.echo("\nDimensions:")
                        for dim_name, attributes, size, minimum, maximum in dimensions:
                            click.echo(f"  {dim_name} ({attributes}): {size} values, {minimum} .. {maximum}")
                    if verbose and configuration.crs:
                        click.echo(f"\nCRS: {configuration.crs}")

    except Exception as e:
        _fail(e, verbose)


@cli.command("query")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--coverage", default=UNSPECIFIED, help="Coverage to query (default: the only one)")
@click.option("--bbox", help="Request envelope as minx,miny,maxx,maxy")
@click.option("--resolution", help="Request resolution as x,y")
@click.option("--time", "time_value", help="Time instant, or start/end")
@click.option("--elevation", help="Elevation value, or start/end")
@click.option("--dim", "dimensions", multiple=True, help="Custom dimension as NAME=VALUE or NAME=start/end")
@click.option("--filter", "filter_text", help="Extra filter, e.g. \"cloud < 20\"")
@click.option("--max-tiles", type=int, help="Maximum number of granules")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def query_command(
    ctx: click.Context,
    root: Path,
    coverage: str,
    bbox: str | None,
    resolution: str | None,
    time_value: str | None,
    elevation: str | None,
    dimensions: tuple[str, ...],
    filter_text: str | None,
    max_tiles: int | None,
    as_json: bool,
    verbose: bool,
):
    """List the granules a read request resolves to.

    ROOT is the mosaic directory.

    \b
    Examples:
        mosaiquet query /data/sst --bbox -10,30,10,50
        mosaiquet query /data/sst --time 2024-01-01/2024-01-31 --json
    """
    setup_logging(verbose)

    try:
        bounds = _parse_numbers(bbox, 4, "--bbox")
        res = _parse_numbers(resolution, 2, "--resolution")
        custom = {}
        for item in dimensions:
            if "=" not in item:
                raise click.BadParameter(f"--dim expects NAME=VALUE, got {item!r}")
            dim_name, text = item.split("=", 1)
            custom[dim_name.strip()] = _parse_value(text, _number_or_text)

        parameters = ReadParameters(
            envelope=Envelope.from_bounds(bounds) if bounds else None,
            resolution=tuple(res) if res else None,
            time=_parse_value(time_value, to_datetime),
            elevation=_parse_value(elevation, float),
            dimensions=custom,
            filter=parse_filter(filter_text),
            max_allowed_tiles=max_tiles,
            assemble=False,
        )

        with _open_mosaic(ctx, root) as mosaic:
            granules = mosaic.resolve(coverage, parameters)

        if as_json:
            output = [
                {
                    "location": g.location,
                    "index": g.index,
                    "window": [g.window.xoff, g.window.yoff, g.window.xsize, g.window.ysize],
                    "level": g.level,
                    "attributes": {k: str(v) for k, v in g.record.attributes.items()},
                }
                for g in granules
            ]
            click.echo(json.dumps(output, indent=2))
        else:
            click.echo(f"{len(granules)} granule(s)")
            for g in granules:
                window = g.window
                click.echo(
                    f"  {g.location}[{g.index}] at {window.xoff},{window.yoff} "
                    f"size {window.xsize}x{window.ysize}, level {g.level}"
                )

    except click.BadParameter:
        raise
    except Exception as e:
        _fail(e, verbose)


@cli.command("domain")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("dimension")
@click.option("--coverage", default=UNSPECIFIED, help="Coverage to query (default: the only one)")
@click.option("--filter", "filter_text", help="Filter on the dimension's own attributes")
@click.option("--offset", type=int, default=0, show_default=True, help="Values to skip")
@click.option("--limit", type=int, default=-1, show_default=True, help="Values to return, -1 for all")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def domain_command(
    ctx: click.Context,
    root: Path,
    dimension: str,
    coverage: str,
    filter_text: str | None,
    offset: int,
    limit: int,
    verbose: bool,
):
    """List the distinct values of a coverage dimension.

    ROOT is the mosaic directory, DIMENSION is TIME, ELEVATION or a custom
    dimension name.

    \b
    Examples:
        mosaiquet domain /data/sst TIME
        mosaiquet domain /data/sst TIME --offset 10 --limit 10
    """
    setup_logging(verbose)

    try:
        with _open_mosaic(ctx, root) as mosaic:
            values = mosaic.get_domain(dimension, coverage, parse_filter(filter_text), offset, limit)
        for value in values:
            if isinstance(value, Range):
                click.echo(f"{value.start}/{value.end}")
            else:
                click.echo(str(value))

    except Exception as e:
        _fail(e, verbose)


@cli.command("remove-coverage")
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("coverage")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def remove_coverage_command(ctx: click.Context, root: Path, coverage: str, verbose: bool):
    """Drop a coverage and its granules from a mosaic.

    Raster files are left untouched.
    """
    setup_logging(verbose)

    try:
        with _open_mosaic(ctx, root) as mosaic:
            mosaic.remove_coverage(coverage)
        click.echo(f"Removed coverage {coverage}")

    except Exception as e:
        _fail(e, verbose)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
