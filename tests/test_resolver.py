import random
import unittest

import pytest

from kubeconverge.errors import CyclicDependency, ManifestError
from kubeconverge.resolver import dependency_closure, resolve_order

from fake_cluster import ident, make_spec, scenario_specs


def _names(specs):
    return [str(s.identity) for s in specs]


class ResolveOrderTests(unittest.TestCase):
    def test_scenario_resolves_in_listed_order(self) -> None:
        specs = scenario_specs()
        ordered = resolve_order(specs)
        self.assertEqual(_names(ordered), _names(specs))

    def test_dependencies_declared_later_are_moved_first(self) -> None:
        specs = [
            make_spec("Deployment/app", "ConfigMap/app-config"),
            make_spec("ConfigMap/app-config", "Secret/creds"),
            make_spec("Secret/creds"),
        ]
        self.assertEqual(
            _names(resolve_order(specs)),
            ["default/Secret/creds", "default/ConfigMap/app-config", "default/Deployment/app"],
        )

    def test_independent_resources_keep_declaration_order(self) -> None:
        specs = [
            make_spec("ConfigMap/b"),
            make_spec("Secret/a"),
            make_spec("Service/c", "Secret/a"),
            make_spec("ConfigMap/d"),
        ]
        self.assertEqual(
            _names(resolve_order(specs)),
            ["default/ConfigMap/b", "default/Secret/a", "default/Service/c", "default/ConfigMap/d"],
        )

    def test_repeated_resolution_is_identical(self) -> None:
        specs = scenario_specs()
        first = _names(resolve_order(specs))
        for _ in range(5):
            self.assertEqual(_names(resolve_order(specs)), first)

    def test_duplicate_dependency_entries_counted_once(self) -> None:
        specs = [make_spec("Secret/a"), make_spec("ConfigMap/b", "Secret/a", "Secret/a")]
        self.assertEqual(_names(resolve_order(specs)), ["default/Secret/a", "default/ConfigMap/b"])


class CycleTests(unittest.TestCase):
    def test_cycle_names_only_its_members(self) -> None:
        specs = [
            make_spec("Secret/root"),
            make_spec("ConfigMap/a", "Secret/root", "Service/c"),
            make_spec("Deployment/b", "ConfigMap/a"),
            make_spec("Service/c", "Deployment/b"),
            make_spec("HorizontalPodAutoscaler/downstream", "Service/c"),
        ]
        with self.assertRaises(CyclicDependency) as ctx:
            resolve_order(specs)
        members = {str(m) for m in ctx.exception.members}
        self.assertEqual(
            members,
            {"default/ConfigMap/a", "default/Deployment/b", "default/Service/c"},
        )
        self.assertIn("default/ConfigMap/a", str(ctx.exception))

    def test_self_dependency_is_a_cycle(self) -> None:
        with self.assertRaises(CyclicDependency) as ctx:
            resolve_order([make_spec("ConfigMap/loop", "ConfigMap/loop")])
        self.assertEqual(ctx.exception.members, [ident("ConfigMap/loop")])

    def test_unknown_dependency_is_a_manifest_error(self) -> None:
        with self.assertRaises(ManifestError):
            resolve_order([make_spec("Deployment/app", "ConfigMap/missing")])


def _random_dag(rng: random.Random, size: int):
    refs = [f"ConfigMap/n{i}" for i in range(size)]
    specs = []
    for i, ref in enumerate(refs):
        deps = rng.sample(refs[:i], k=rng.randint(0, min(i, 3)))
        specs.append(make_spec(ref, *deps))
    rng.shuffle(specs)
    return specs


@pytest.mark.parametrize("seed", range(25))
def test_random_dags_respect_every_dependency(seed: int) -> None:
    rng = random.Random(seed)
    specs = _random_dag(rng, rng.randint(1, 15))
    ordered = resolve_order(specs)

    assert sorted(_names(ordered)) == sorted(_names(specs))
    position = {s.identity: i for i, s in enumerate(ordered)}
    for spec in ordered:
        for dep in spec.depends_on:
            assert position[dep] < position[spec.identity]
    assert _names(resolve_order(specs)) == _names(ordered)


def test_dependency_closure_is_transitive() -> None:
    closure = dependency_closure(scenario_specs(), ident("Service/db-svc"))
    assert set(closure) == {
        ident("ConfigMap/app-config"),
        ident("Deployment/app"),
        ident("HorizontalPodAutoscaler/app-scaler"),
    }


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
