from kidspoints_api import extract_hydra_collection, get_hydra_total_items


def test_collection_helpers():
    response = {
        "@context": "/api/contexts/Mission",
        "hydra:member": [{"id": 1}, {"id": 2}],
        "hydra:totalItems": 12,
    }

    assert extract_hydra_collection(response) == [{"id": 1}, {"id": 2}]
    assert get_hydra_total_items(response) == 12


def test_missing_fields():
    assert extract_hydra_collection({}) == []
    assert get_hydra_total_items({}) == 0
    assert extract_hydra_collection([{"id": 1}]) == []
    assert get_hydra_total_items(None) == 0
