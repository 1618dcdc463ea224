from chronomesh.models import Event, EventInfo, ParentRef


def test_parent_ref_to_dict():
    assert ParentRef("_:a").to_dict() == {"uid": "_:a"}
    assert ParentRef().to_dict() == {}


def test_empty_event_serialises_to_empty_dict():
    assert Event().to_dict() == {}


def test_event_to_dict_keeps_field_order():
    event = Event(
        uid="_:x",
        id="e1_1",
        name="k:v",
        clock='{"1":1}',
        depth=1,
        parent=[ParentRef("_:p")],
        value="v",
        key="k",
        node="0xabc",
    )
    data = event.to_dict()
    assert list(data) == ["uid", "id", "name", "clock", "depth", "parent", "value", "key", "node"]
    assert data["parent"] == [{"uid": "_:p"}]
    assert data["depth"] == 1


def test_event_to_dict_omits_zero_depth_and_empty_parents():
    data = Event(id="e1_2", name="a:b", parent=[]).to_dict()
    assert data == {"id": "e1_2", "name": "a:b"}


def test_event_info_holds_values():
    info = EventInfo(key="k", value="v", event_name="k:v", key_num=4, node_id=2)
    assert (info.key, info.value, info.event_name, info.key_num, info.node_id) == ("k", "v", "k:v", 4, 2)