# tests/unit/test_vector.py

import pytest
import geopandas as gpd
from shapely.geometry import Point, Polygon

from phytocanopy.vector import Vector, load_vector, save_vector

@pytest.fixture
def crowns_gdf():
    """Creates a basic GeoDataFrame with one crown."""
    return gpd.GeoDataFrame(
        {'tree_id': [1], 'maxz': [18.5], 'geometry': [Polygon([(0, 0), (10, 0), (10, 10), (0, 10)])]},
        crs="EPSG:32619"
    )

# --- Initialization Tests ---

def test_init_valid(crowns_gdf):
    """Test initializing Vector with a valid GeoDataFrame."""
    v = Vector(crowns_gdf)
    assert len(v) == 1
    assert v.crs == crowns_gdf.crs

def test_init_invalid_type():
    """Test that initializing with non-GDF raises TypeError."""
    with pytest.raises(TypeError):
        Vector("not a dataframe")

def test_from_records():
    records = [
        {"tree_id": 1, "height": 12.0, "geometry": Point(1, 1)},
        {"tree_id": 2, "height": 9.5, "geometry": Point(4, 2)},
    ]
    v = Vector.from_records(records, crs="EPSG:32619")

    assert len(v) == 2
    assert v.columns == ["tree_id", "height", "geometry"]
    assert v.crs.to_epsg() == 32619

def test_from_records_empty_keeps_schema():
    v = Vector.from_records([], crs="EPSG:32619", columns=["tree_id", "height"])

    assert v.empty
    assert v.columns == ["tree_id", "height", "geometry"]

# --- Property Tests ---

def test_properties(crowns_gdf):
    v = Vector(crowns_gdf)
    # Check simple properties delegation
    assert v.crs == crowns_gdf.crs
    assert (v.bounds == crowns_gdf.total_bounds).all()
    assert v.columns == crowns_gdf.columns.tolist()

def test_data_setter_rejects_non_gdf(crowns_gdf):
    v = Vector(crowns_gdf)
    with pytest.raises(TypeError):
        v.data = [1, 2, 3]

# --- I/O Tests ---

def test_save_and_load_vector(tmp_path, crowns_gdf):
    """Test saving the vector to disk and loading it back."""
    out_path = tmp_path / "nested" / "crowns.gpkg"

    written = save_vector(Vector(crowns_gdf), out_path, driver="GPKG")
    loaded = load_vector(written)

    assert written == out_path
    assert len(loaded) == 1
    assert loaded.data["maxz"].iloc[0] == 18.5
    assert loaded.crs.to_epsg() == 32619

def test_load_vector_missing():
    """Test loading a non-existent file."""
    with pytest.raises(FileNotFoundError):
        load_vector("ghost.gpkg")
