import pytest

from geantcad.errors import LoadError, ValidationError
from geantcad.geometry_types import (
    BooleanOperation, BoxParams, Shape, ShapeType, TubeParams, format_double,
    make_box, make_boolean_solid, make_cone, make_polycone, make_polyhedra,
    make_sphere, make_trd, make_tube, parse_shape_type,
)


def all_shapes():
    return [
        make_box(10, 20, 30),
        make_tube(2, 10, 15, 0, 180),
        make_sphere(0, 50, 0, 360, 0, 90),
        make_cone(0, 5, 1, 10, 20),
        make_trd(10, 5, 8, 4, 12),
        make_polycone([-10, 0, 10], [0, 0, 0], [5, 8, 5]),
        make_polyhedra(8, [-10, 10], [1, 1], [6, 6]),
        make_boolean_solid("subtraction", "Outer", "Inner", (0, 0, 5), (0, 0, 45)),
    ]


@pytest.mark.parametrize("shape", all_shapes(), ids=lambda s: s.type.value)
def test_json_round_trip(shape):
    assert Shape.from_dict(shape.to_dict()) == shape


def test_factory_defaults():
    box = make_box()
    assert (box.params.x, box.params.y, box.params.z) == (10.0, 10.0, 10.0)
    assert make_polyhedra(6, [-1, 1], [0, 0], [1, 1]).params.num_sides == 6
    cone = make_cone()
    assert (cone.params.rmin1, cone.params.rmax1, cone.params.rmin2, cone.params.rmax2) == (0, 5, 0, 10)


def test_default_names():
    assert make_box().name == "Box"
    assert make_boolean_solid("union", "A", "B").name == "union_A_B"


@pytest.mark.parametrize("factory", [
    lambda: make_box(-1, 1, 1),
    lambda: make_tube(5, 5, 1),
    lambda: make_tube(0, 10, 0),
    lambda: make_tube(0, 10, 1, 0, 400),
    lambda: make_sphere(0, 10, 0, 360, 0, 200),
    lambda: make_cone(0, 5, 3, 2, 10),
    lambda: make_trd(0, 1, 1, 1, 1),
    lambda: make_polycone([0], [0], [1]),
    lambda: make_polycone([10, 0], [0, 0], [1, 1]),
    lambda: make_polyhedra(2, [0, 1], [0, 0], [1, 1]),
    lambda: make_boolean_solid("union", "", "B"),
])
def test_invalid_parameters_rejected(factory):
    with pytest.raises(ValidationError):
        factory()


def test_params_type_must_match():
    with pytest.raises(ValidationError):
        Shape(ShapeType.BOX, TubeParams())


def test_get_params_as():
    box = make_box()
    assert isinstance(box.get_params_as(BoxParams), BoxParams)
    assert box.get_params_as(TubeParams) is None


def test_clone_is_deep():
    shape = make_polycone([-10, 10], [0, 0], [5, 5])
    clone = shape.clone()
    clone.params.rmax[0] = 99
    assert shape.params.rmax[0] == 5


def test_parse_shape_type_accepts_legacy_ints():
    assert parse_shape_type(0) is ShapeType.BOX
    assert parse_shape_type("Tube") is ShapeType.TUBE
    with pytest.raises(LoadError):
        parse_shape_type("torus")


def test_unknown_shape_tag_fails_to_load():
    with pytest.raises(LoadError):
        Shape.from_dict({"type": "hyperboloid", "params": {}})


def test_boolean_operation_parsed():
    shape = make_boolean_solid("Intersection", "A", "B")
    assert shape.params.operation is BooleanOperation.INTERSECTION


def test_format_double():
    assert format_double(20.0) == "20"
    assert format_double(0.25) == "0.25"
    assert format_double(-0.0000001) == "0"
