from PIL import Image
from PIL.PngImagePlugin import PngInfo

# palette indices
REGION_GRID = 0
REGION_STUB = 1
REGION_STORY = 2
REGION_PARTIAL = 3
REGION_PADDING = 4

SECTOR_MAP_PALETTE = [
    (0x00, 0x00, 0x00),  # grid lines
    (0x3F, 0x5F, 0xDF),  # interpreter stub
    (0x3F, 0xBF, 0x5F),  # story data
    (0xDF, 0xBF, 0x2F),  # story data ending mid-sector
    (0x5F, 0x5F, 0x5F),  # zero padding
]

# pixels per sector cell, including a one-pixel grid line on the
# right and bottom edges
CELL_SIZE = 8


def classify_sector(image_offset, *, result, sector_size):
    """Which region of the image the sector starting at `image_offset`
    belongs to, given the byte counts of a finished assembly.

    """
    story_start = result.stub_bytes
    story_end = result.stub_bytes + result.story_bytes
    if image_offset < story_start:
        return REGION_STUB
    if image_offset + sector_size <= story_end:
        return REGION_STORY
    if image_offset < story_end:
        return REGION_PARTIAL
    return REGION_PADDING


def render_sector_map(*, result, geometry):
    """Draw one cell per sector of a DOS-order image, tracks top to
    bottom and sectors left to right.

    """
    width = geometry.sectors_per_track * CELL_SIZE
    height = geometry.tracks * CELL_SIZE
    image = Image.new("P", (width, height), REGION_GRID)
    image.putpalette(sum([list(rgb) for rgb in SECTOR_MAP_PALETTE], []))
    for track in range(geometry.tracks):
        for sector in range(geometry.sectors_per_track):
            image_offset = (
                track * geometry.sectors_per_track + sector
            ) * geometry.sector_size
            region = classify_sector(
                image_offset, result=result, sector_size=geometry.sector_size
            )
            for y in range(CELL_SIZE - 1):
                for x in range(CELL_SIZE - 1):
                    image.putpixel(
                        (sector * CELL_SIZE + x, track * CELL_SIZE + y), region
                    )
    return image


def save_sector_map(*, path, image):
    pnginfo = PngInfo()
    pnginfo.add(b"gAMA", int(0.45455e5).to_bytes(4, "big"))
    image.save(path, pnginfo=pnginfo)
