"""Tests for the authoring state machine."""

import asyncio
import json

import pytest
from shapely.geometry import shape

from citylayers.authoring.canvas import CanvasRole, CanvasShape, InMemoryCanvas
from citylayers.authoring.session import (
    ALL_DUPLICATES,
    CLIPPED_DRAWN,
    OUTSIDE_DRAWN,
    AuthoringStateMachine,
    DataSource,
    Step,
)
from citylayers.config import Settings
from citylayers.errors import (
    EmptyFeatureSet,
    ErrorKind,
    InvalidTransition,
    NameConflict,
    ParseFailure,
    PersistenceError,
    SessionBusy,
)
from citylayers.layers.formats import UploadedFile
from citylayers.layers.store import JsonLayerStore
from citylayers.layers.validator import validate_feature

INSIDE = [-80.5204, 43.4643]
OUTSIDE_POLYGON = {"type": "Polygon", "coordinates": [[[10, 10], [11, 10], [11, 11], [10, 10]]]}


class FakeStore:
    """In-memory persistence collaborator."""

    def __init__(self, layers=None, others=None):
        self.layers = layers or {}
        self.icons = {}
        self.others = others or []
        self.saved = []
        self.fail_save = False
        self.gate = None

    async def load_layer_for_editing(self, city_name, domain, layer_name):
        if self.gate is not None:
            await self.gate.wait()
        try:
            return self.layers[(domain, layer_name)]
        except KeyError:
            raise FileNotFoundError(f"{domain}/{layer_name}")

    async def load_layer_icon(self, city_name, domain, layer_name):
        return self.icons.get((domain, layer_name))

    async def save(self, record):
        if self.fail_save:
            raise OSError("disk full")
        self.saved.append(record)

    async def get_all_features(self):
        return list(self.others)


def _geojson_file(*coords, name="points.geojson") -> UploadedFile:
    features = [
        {"type": "Feature", "geometry": {"type": "Point", "coordinates": list(c)}, "properties": {}}
        for c in coords
    ]
    return UploadedFile(name, json.dumps({"type": "FeatureCollection", "features": features}).encode())


def _point(coords):
    return {"type": "Point", "coordinates": list(coords)}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def draw_canvas():
    return InMemoryCanvas(CanvasRole.DRAW)


@pytest.fixture
def review_canvas():
    return InMemoryCanvas(CanvasRole.REVIEW)


@pytest.fixture
def make_machine(store, draw_canvas, review_canvas):
    def make(boundary=None, existing=None, **settings):
        return AuthoringStateMachine(
            "waterloo",
            store,
            boundary=boundary,
            existing_layers=existing,
            draw_canvas=draw_canvas,
            review_canvas=review_canvas,
            settings=Settings(**settings),
        )
    return make


def _to_acquire(machine, source, name="street_trees", domain="environment"):
    assert machine.set_identity(name, domain) is None
    machine.confirm_identity()
    machine.choose_source(source)


class TestIdentityStep:
    """Step 1 -> 2."""

    def test_valid_identity_advances(self, make_machine):
        machine = make_machine()
        machine.set_identity("street_trees", "environment")
        machine.confirm_identity()
        assert machine.session.step == Step.SOURCE

    def test_bad_format_blocks_progress(self, make_machine):
        """'My Layer' is refused on format alone."""
        machine = make_machine()
        error = machine.set_identity("My Layer", "environment")
        assert error == "Layer name must contain only lowercase letters and underscores"
        with pytest.raises(NameConflict):
            machine.confirm_identity()
        assert machine.session.step == Step.IDENTITY

    def test_sibling_conflict(self, make_machine):
        machine = make_machine(existing={"environment": ["street_trees"]})
        assert "already exists" in machine.set_identity("street_trees", "environment")
        with pytest.raises(NameConflict):
            machine.confirm_identity()

    def test_domain_required(self, make_machine):
        machine = make_machine()
        machine.set_identity("street_trees", "")
        with pytest.raises(InvalidTransition):
            machine.confirm_identity()

    def test_predefined_pick_gets_official_icon(self, make_machine):
        machine = make_machine()
        assert machine.set_identity("parks", "environment", custom=False) is None
        assert machine.session.identity.icon == "fas fa-tree"

    def test_custom_gets_default_icon(self, make_machine):
        machine = make_machine()
        machine.set_identity("street_trees", "environment")
        assert machine.session.identity.icon == "fas fa-map-marker-alt"


class TestNavigation:
    """Transitions that are not tied to ingestion."""

    def test_choose_source_requires_step_two(self, make_machine):
        with pytest.raises(InvalidTransition):
            make_machine().choose_source(DataSource.UPLOAD)

    def test_go_back_walks_down(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        machine.go_back()
        assert machine.session.step == Step.SOURCE
        machine.go_back()
        assert machine.session.step == Step.IDENTITY
        with pytest.raises(InvalidTransition):
            machine.go_back()

    def test_upload_source_mounts_no_canvas(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        assert machine.canvases.mounted is None

    def test_draw_source_mounts_draw_canvas(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        assert machine.canvases.mounted == CanvasRole.DRAW
        assert draw_canvas.is_mounted


class TestUpload:
    """Step 3 upload -> step 4."""

    @pytest.mark.anyio
    async def test_single_point_geojson(self, make_machine, review_canvas):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file(INSIDE)])
        assert machine.session.step == Step.REVIEW
        assert len(machine.session.features) == 1
        assert machine.session.features[0].name == "Feature 1"
        assert review_canvas.is_mounted
        assert [s.shape_id for s in review_canvas.shapes()] == [machine.session.features[0].feature_id]

    @pytest.mark.anyio
    async def test_csv_point(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([UploadedFile("pts.csv", b"longitude,latitude\n-80.0,43.0\n")])
        f = machine.session.features[0]
        assert f.properties["name"] == "Feature 1"
        assert f.geometry == {"type": "Point", "coordinates": [-80.0, 43.0]}

    @pytest.mark.anyio
    async def test_same_file_twice_in_append_mode(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file(INSIDE)])
        machine.add_more_features()
        assert machine.session.append_mode is True
        notices = await machine.upload([_geojson_file(INSIDE)])
        assert len(machine.session.features) == 1
        assert any(n.kind == ErrorKind.DUPLICATE for n in notices)

    @pytest.mark.anyio
    async def test_replace_mode_discards_existing(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file([1, 1], [2, 2])])
        machine.add_more_features()
        machine.set_append_mode(False)
        await machine.upload([_geojson_file([3, 3])])
        assert [f.geometry["coordinates"] for f in machine.session.features] == [[3, 3]]

    @pytest.mark.anyio
    async def test_failed_parse_leaves_features_untouched(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file(INSIDE)])
        before = list(machine.session.features)
        machine.add_more_features()
        with pytest.raises(ParseFailure):
            await machine.upload([UploadedFile("bad.geojson", b"{nope")])
        assert machine.session.features == before
        assert machine.session.step == Step.ACQUIRE
        assert machine.session.is_processing is False
        assert machine.session.notices[0].kind == ErrorKind.PARSE_FAILURE

    @pytest.mark.anyio
    async def test_all_outside_leaves_session_unchanged(self, make_machine, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "upload")
        notices = await machine.upload([_geojson_file([0, 0], [1, 1])])
        assert machine.session.features == []
        assert machine.session.step == Step.ACQUIRE
        assert any("All features in the uploaded file are outside" in n.message for n in notices)

    @pytest.mark.anyio
    async def test_nothing_valid_leaves_session_unchanged(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        notices = await machine.upload([_geojson_file([999, 0])])
        assert machine.session.features == []
        assert notices[-1].kind == ErrorKind.EMPTY_FEATURE_SET

    @pytest.mark.anyio
    async def test_outside_count_reported(self, make_machine, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "upload")
        notices = await machine.upload([_geojson_file(INSIDE, [0, 0])])
        assert len(machine.session.features) == 1
        assert "1 feature was outside the city boundary and removed." in [n.message for n in notices]

    @pytest.mark.anyio
    async def test_second_upload_while_processing_is_busy(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        results = await asyncio.gather(
            machine.upload([_geojson_file(INSIDE)]),
            machine.upload([_geojson_file([1, 1])]),
            return_exceptions=True,
        )
        assert isinstance(results[1], SessionBusy)
        assert len(machine.session.features) == 1

    @pytest.mark.anyio
    async def test_close_during_upload_discards_result(self, make_machine, review_canvas):
        machine = make_machine()
        _to_acquire(machine, "upload")
        task = asyncio.create_task(machine.upload([_geojson_file(INSIDE)]))
        await asyncio.sleep(0)
        machine.close()
        assert await task == []
        assert machine.session.step == Step.IDENTITY
        assert machine.session.features == []
        assert machine.session.is_processing is False
        assert not review_canvas.is_mounted

    @pytest.mark.anyio
    async def test_upload_requires_upload_source(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "draw")
        with pytest.raises(InvalidTransition):
            await machine.upload([_geojson_file(INSIDE)])

    @pytest.mark.anyio
    async def test_invalid_features_never_enter_state(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file([0, 0], [200, 0], [0, -95])])
        assert all(validate_feature(f) for f in machine.session.features)
        assert len(machine.session.features) == 1


class TestDrawing:
    """Canvas events in draw mode."""

    def test_drawn_point_inside(self, make_machine, draw_canvas, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "draw")
        notices = machine.feature_created(draw_canvas.draw(_point(INSIDE)))
        assert notices == []
        f = machine.session.features[0]
        assert f.name == "Feature 1"
        assert [s.shape_id for s in draw_canvas.shapes()] == [f.feature_id]

    def test_polygon_fully_outside_rejected(self, make_machine, draw_canvas, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "draw")
        notices = machine.feature_created(draw_canvas.draw(OUTSIDE_POLYGON))
        assert machine.session.features == []
        assert notices[0].kind == ErrorKind.BOUNDARY_REJECT
        assert notices[0].message == OUTSIDE_DRAWN
        assert draw_canvas.shapes() == []

    def test_polygon_crossing_boundary_clipped(self, make_machine, draw_canvas, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "draw")
        crossing = {"type": "Polygon", "coordinates": [[[-80.5, 43.5], [-79.5, 43.5], [-79.5, 43.8], [-80.5, 43.8], [-80.5, 43.5]]]}
        notices = machine.feature_created(draw_canvas.draw(crossing))
        assert notices[0].message == CLIPPED_DRAWN
        assert shape(machine.session.features[0].geometry).bounds[2] == pytest.approx(-80.0)

    def test_invalid_drawing_rejected(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        notices = machine.feature_created(draw_canvas.draw({"type": "LineString", "coordinates": []}))
        assert machine.session.features == []
        assert notices[0].kind == ErrorKind.VALIDATION_REJECT

    def test_event_from_unmounted_canvas(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "draw")
        with pytest.raises(InvalidTransition):
            machine.feature_created(CanvasShape(None, _point(INSIDE)), role=CanvasRole.REVIEW)

    def test_edit_keeps_names_by_id(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        machine.feature_created(draw_canvas.draw(_point([2, 2])))
        machine.rename_feature(machine.session.features[0].feature_id, "Oak")

        first, second = draw_canvas.shapes()
        # Canvas reports the shapes in reverse order after an edit
        machine.features_edited([second, CanvasShape(first.shape_id, _point([1.5, 1.5]))])

        by_name = {f.name: f for f in machine.session.features}
        assert set(by_name) == {"Oak", "Feature 2"}
        assert by_name["Oak"].geometry["coordinates"] == [1.5, 1.5]
        assert by_name["Oak"].feature_id == first.shape_id

    def test_unknown_shapes_fall_back_to_position(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        machine.rename_feature(machine.session.features[0].feature_id, "Oak")
        machine.features_edited([CanvasShape(None, _point([5, 5]))])
        assert machine.session.features[0].name == "Oak"

    def test_delete_rebuilds_from_remaining(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        for coords in ([1, 1], [2, 2], [3, 3]):
            machine.feature_created(draw_canvas.draw(_point(coords)))
        remaining = [s for s in draw_canvas.shapes() if s.geometry["coordinates"] != [2, 2]]
        machine.features_deleted(remaining)
        assert [f.name for f in machine.session.features] == ["Feature 1", "Feature 3"]

    def test_edit_moving_outside_drops_feature(self, make_machine, draw_canvas, boundary):
        machine = make_machine(boundary=boundary)
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point(INSIDE)))
        moved = CanvasShape(draw_canvas.shapes()[0].shape_id, _point([0, 0]))
        notices = machine.features_edited([moved])
        assert machine.session.features == []
        assert notices[0].kind == ErrorKind.BOUNDARY_REJECT

    def test_rename_unknown_feature(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "draw")
        with pytest.raises(KeyError):
            machine.rename_feature("feat-missing", "x")

    def test_rename_updates_both_keys(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        fid = machine.session.features[0].feature_id
        machine.rename_feature(fid, "  Big Oak ")
        props = machine.session.features[0].properties
        assert props["name"] == props["feature_name"] == "Big Oak"


class TestSave:
    """Terminal success and its failure modes."""

    @pytest.mark.anyio
    async def test_save_after_upload(self, make_machine, store, review_canvas):
        machine = make_machine()
        _to_acquire(machine, "upload")
        await machine.upload([_geojson_file(INSIDE)])
        record, notices = await machine.save()
        assert store.saved == [record]
        assert record.name == "street_trees"
        assert record.is_edit is False
        assert notices == []
        assert machine.session.step == Step.IDENTITY
        assert machine.session.features == []
        assert not review_canvas.is_mounted
        assert machine.existing_layers["environment"] == ["street_trees"]

    @pytest.mark.anyio
    async def test_save_from_draw_step(self, make_machine, draw_canvas, store):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point(INSIDE)))
        record, _ = await machine.save()
        assert len(record.features) == 1

    @pytest.mark.anyio
    async def test_save_not_allowed_from_upload_step(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "upload")
        with pytest.raises(InvalidTransition):
            await machine.save()

    @pytest.mark.anyio
    async def test_empty_save_blocked(self, make_machine):
        machine = make_machine()
        _to_acquire(machine, "draw")
        with pytest.raises(EmptyFeatureSet):
            await machine.save()

    @pytest.mark.anyio
    async def test_name_revalidated_on_save(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point(INSIDE)))
        machine.existing_layers["environment"] = ["street_trees"]
        with pytest.raises(NameConflict):
            await machine.save()

    @pytest.mark.anyio
    async def test_cross_layer_duplicates_dropped(self, make_machine, draw_canvas, store):
        store.others = [{
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [1.0000001, 1.0]},
            "properties": {"layer_name": "benches", "domain_name": "culture"},
        }]
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        machine.feature_created(draw_canvas.draw(_point([2, 2])))
        record, notices = await machine.save()
        assert [f.geometry["coordinates"] for f in record.features] == [[2, 2]]
        assert notices[0].kind == ErrorKind.DUPLICATE

    @pytest.mark.anyio
    async def test_all_duplicates(self, make_machine, draw_canvas, store):
        store.others = [{"geometry": {"type": "Point", "coordinates": [1, 1]}, "properties": {}}]
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        with pytest.raises(EmptyFeatureSet) as exc:
            await machine.save()
        assert exc.value.message == ALL_DUPLICATES

    @pytest.mark.anyio
    async def test_duplicate_check_can_be_disabled(self, make_machine, draw_canvas, store):
        store.others = [{"geometry": {"type": "Point", "coordinates": [1, 1]}, "properties": {}}]
        machine = make_machine(check_cross_layer_duplicates=False)
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        record, _ = await machine.save()
        assert len(record.features) == 1

    @pytest.mark.anyio
    async def test_store_failure_keeps_session_open(self, make_machine, draw_canvas, store):
        store.fail_save = True
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point(INSIDE)))
        with pytest.raises(PersistenceError):
            await machine.save()
        assert machine.session.step == Step.ACQUIRE
        assert len(machine.session.features) == 1
        store.fail_save = False
        record, _ = await machine.save()
        assert store.saved == [record]


class TestEditMode:
    """Reopening a saved layer."""

    @pytest.fixture
    def stored_layer(self, store):
        store.layers[("environment", "street_trees")] = [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [1, 1]},
                "properties": {"name": "Oak", "feature_name": "Oak", "layer_name": "street_trees", "domain_name": "environment"},
            },
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [500, 1]},
                "properties": {"name": "Broken"},
            },
        ]
        store.others = list(store.layers[("environment", "street_trees")])
        return store

    @pytest.mark.anyio
    async def test_open_jumps_to_draw_step(self, make_machine, stored_layer, draw_canvas):
        machine = make_machine(existing={"environment": ["street_trees"]})
        await machine.open_for_edit("environment", "street_trees")
        session = machine.session
        assert session.step == Step.ACQUIRE
        assert session.data_source == DataSource.DRAW
        assert session.is_edit
        assert [f.name for f in session.features] == ["Oak"]
        assert draw_canvas.is_mounted
        assert len(draw_canvas.shapes()) == 1

    @pytest.mark.anyio
    async def test_save_edit_excludes_own_layer_from_duplicates(self, make_machine, stored_layer):
        machine = make_machine(existing={"environment": ["street_trees"]})
        await machine.open_for_edit("environment", "street_trees")
        record, notices = await machine.save()
        assert len(record.features) == 1
        assert notices == []
        assert record.is_edit is True
        assert record.layer_name_changed is False

    @pytest.mark.anyio
    async def test_rename_during_edit(self, make_machine, stored_layer):
        machine = make_machine(existing={"environment": ["street_trees", "benches"]})
        await machine.open_for_edit("environment", "street_trees")
        machine.go_back()
        machine.go_back()
        assert machine.set_identity("shade_trees", "environment") is None
        machine.confirm_identity()
        machine.choose_source("draw")
        record, _ = await machine.save()
        assert record.layer_name_changed is True
        assert record.original_name == "street_trees"
        assert sorted(machine.existing_layers["environment"]) == ["benches", "shade_trees"]

    @pytest.mark.anyio
    async def test_edit_keeps_own_name_valid(self, make_machine, stored_layer):
        machine = make_machine(existing={"environment": ["street_trees"]})
        await machine.open_for_edit("environment", "street_trees")
        machine.go_back()
        machine.go_back()
        assert machine.set_identity("street_trees", "environment") is None

    @pytest.mark.anyio
    async def test_load_failure(self, make_machine):
        machine = make_machine()
        with pytest.raises(PersistenceError):
            await machine.open_for_edit("environment", "missing")
        assert machine.session.step == Step.IDENTITY
        assert machine.session.loading is False

    @pytest.mark.anyio
    async def test_stored_icon_kept_on_save(self, make_machine, stored_layer):
        stored_layer.icons[("environment", "street_trees")] = "fas fa-seedling"
        machine = make_machine(existing={"environment": ["street_trees"]})
        await machine.open_for_edit("environment", "street_trees")
        assert machine.session.identity.icon == "fas fa-seedling"
        record, _ = await machine.save()
        assert record.icon == "fas fa-seedling"

    @pytest.mark.anyio
    async def test_explicit_icon_wins_over_stored(self, make_machine, stored_layer):
        stored_layer.icons[("environment", "street_trees")] = "fas fa-seedling"
        machine = make_machine()
        await machine.open_for_edit("environment", "street_trees", icon="fas fa-leaf")
        assert machine.session.identity.icon == "fas fa-leaf"

    @pytest.mark.anyio
    async def test_json_store_round_trip_keeps_icon(self, tmp_path, draw_canvas, review_canvas):
        store = JsonLayerStore(tmp_path, "waterloo")
        machine = AuthoringStateMachine("waterloo", store, draw_canvas=draw_canvas, review_canvas=review_canvas)
        machine.set_identity("street_trees", "environment", icon="fas fa-tree")
        machine.confirm_identity()
        machine.choose_source("draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        await machine.save()

        machine = AuthoringStateMachine(
            "waterloo", store, existing_layers=store.existing_layers(),
            draw_canvas=draw_canvas, review_canvas=review_canvas,
        )
        await machine.open_for_edit("environment", "street_trees")
        record, _ = await machine.save()
        assert record.icon == "fas fa-tree"

    @pytest.mark.anyio
    async def test_close_during_load_discards_layer(self, make_machine, stored_layer, draw_canvas):
        stored_layer.gate = asyncio.Event()
        machine = make_machine()
        task = asyncio.create_task(machine.open_for_edit("environment", "street_trees"))
        await asyncio.sleep(0)
        machine.close()
        stored_layer.gate.set()
        await task
        assert machine.session.step == Step.IDENTITY
        assert machine.session.features == []
        assert machine.session.is_edit is False
        assert not draw_canvas.is_mounted


class TestClose:
    def test_close_releases_and_resets(self, make_machine, draw_canvas):
        machine = make_machine()
        _to_acquire(machine, "draw")
        machine.feature_created(draw_canvas.draw(_point([1, 1])))
        machine.close()
        assert not draw_canvas.is_mounted
        assert machine.canvases.mounted is None
        assert machine.session.step == Step.IDENTITY
        assert machine.session.features == []
