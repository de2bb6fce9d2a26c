"""Tests for loading mapping configurations and merging base elements."""
import unittest
import tempfile
import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import standoff_mapper
from standoff_mapper.config import (AnnotationKind, DEFAULT_SET, MappingConfig, load_config)
from standoff_mapper.errors import ConfigError
from standoff_mapper.whitespace import WhitespaceMode

BASES_TOML = """
[baseelements.common]
id = "{{ @id }}"
textsuffix = "common"

    [[baseelements.common.annotationdata]]
    key = "from"
    value = "common"

[baseelements.withtext]
text = true
annotation = "TextSelector"
textsuffix = "withtext"
textprefix = "withtext"

    [[baseelements.withtext.annotationdata]]
    key = "from"
    value = "withtext"

[baseelements.nested]
base = ["withtext"]
textprefix = "nested"

    [[baseelements.nested.annotationdata]]
    key = "from"
    value = "nested"

[[elements]]
base = ["common", "withtext"]
path = "//a"

[[elements]]
base = ["withtext", "common"]
path = "//b"
textsuffix = "own"

    [[elements.annotationdata]]
    key = "from"
    value = "own"

[[elements]]
base = ["nested"]
path = "//c"
"""


class TestBaseResolution(unittest.TestCase):

    def setUp(self):
        self.config = MappingConfig.from_toml_str(BASES_TOML)
        self.a, self.b, self.c = self.config.elements

    def test_first_listed_base_wins(self):
        self.assertEqual(self.a.textsuffix, "common")
        self.assertEqual(self.a.textprefix, "withtext")
        self.assertEqual(self.a.id, "{{ @id }}")
        self.assertTrue(self.a.emits_text)
        self.assertEqual(self.a.annotation_kind, AnnotationKind.TEXT_SELECTOR)

    def test_own_value_wins(self):
        self.assertEqual(self.b.textsuffix, "own")
        self.assertEqual(self.b.textprefix, "withtext")

    def test_annotationdata_concatenated(self):
        self.assertEqual([d.value for d in self.a.annotationdata], ["common", "withtext"])
        self.assertEqual([d.value for d in self.b.annotationdata], ["withtext", "common", "own"])

    def test_nested_bases(self):
        self.assertEqual(self.c.textprefix, "nested")
        self.assertEqual(self.c.textsuffix, "withtext")
        self.assertTrue(self.c.emits_text)
        self.assertEqual([d.value for d in self.c.annotationdata], ["withtext", "nested"])

    def test_unknown_base(self):
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\nbase = ["missing"]\n')

    def test_circular_base(self):
        toml = """
[baseelements.x]
base = ["y"]
[baseelements.y]
base = ["x"]
[[elements]]
path = "//a"
base = ["x"]
"""
        with self.assertRaises(ConfigError) as cm:
            MappingConfig.from_toml_str(toml)
        self.assertIn("circular", str(cm.exception))


class TestMappingConfig(unittest.TestCase):

    def test_defaults(self):
        config = MappingConfig.from_toml_str('[[elements]]\npath = "//a"\n')
        rule = config.elements[0]
        self.assertEqual(config.whitespace, WhitespaceMode.COLLAPSE)
        self.assertEqual(config.default_set, DEFAULT_SET)
        self.assertFalse(rule.emits_text)
        self.assertFalse(rule.stops)
        self.assertIsNone(rule.whitespace)
        self.assertEqual(rule.annotation_kind, AnnotationKind.NONE)
        self.assertEqual(config.prefixes["http://www.w3.org/XML/1998/namespace"], "xml")

    def test_text_selector_requires_text(self):
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\nannotation = "TextSelector"\n')
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\nannotation = "TextSelector"\ntext = false\n')

    def test_invalid_values(self):
        for toml in [
            '[[elements]]\npath = "//a"\nannotation = "Everything"\n',
            '[[elements]]\npath = "//a"\nwhitespace = "Squeeze"\n',
            '[[elements]]\npath = "//a"\ntext = "yes"\n',
            'whitespace = "Inherit"\n',
            '[[elements]]\ntext = true\n',
            '[[elements]]\npath = "//a"\n[[elements.annotationdata]]\nvalue = "x"\n',
            '[[elements]]\npath = "//a"\n[[elements.annotationdata]]\nkey = "x"\n',
            'this is not toml',
        ]:
            with self.subTest(toml=toml):
                with self.assertRaises(ConfigError):
                    MappingConfig.from_toml_str(toml)

    def test_unknown_prefix(self):
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//tei:a"\n')
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\nid = "{{ @tei:id }}"\n')
        config = MappingConfig.from_toml_str(
            '[namespaces]\ntei = "http://www.tei-c.org/ns/1.0"\n[[elements]]\npath = "//tei:a"\nid = "{{ @xml:id }}"\n')
        self.assertEqual(config.elements[0].pattern.steps[0].namespace, "http://www.tei-c.org/ns/1.0")

    def test_template_syntax_error(self):
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\ntextprefix = "{% if @n %}x"\n')
        with self.assertRaises(ConfigError):
            MappingConfig.from_toml_str(
                '[[elements]]\npath = "//a"\n[[elements.annotationdata]]\nkey = "k"\nvalue = ["{{ @n | }}"]\n')

    def test_unknown_keys_warn(self):
        with self.assertLogs(level="WARNING") as cm:
            MappingConfig.from_toml_str('[[elements]]\npath = "//a"\nhandling = "TextSelector"\n')
        self.assertTrue(any("handling" in line for line in cm.output))

    def test_resource_id(self):
        config = MappingConfig.from_dict({"id_strip_suffix": [".tei.xml", ".xml"]})
        self.assertEqual(config.resource_id("/data/letter.tei.xml"), "letter")
        self.assertEqual(config.resource_id("letter.xml"), "letter")
        self.assertEqual(config.resource_id("letter.txt"), "letter.txt")

    def test_load_formats(self):
        data = {
            "default_set": "urn:test",
            "elements": [{"path": "//p", "text": True, "annotation": "TextSelector"}],
        }
        with tempfile.TemporaryDirectory() as tmp:
            json_path = os.path.join(tmp, "config.json")
            with open(json_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            yaml_path = os.path.join(tmp, "config.yaml")
            with open(yaml_path, "w", encoding="utf-8") as f:
                f.write("default_set: urn:test\nelements:\n  - path: //p\n    text: true\n    annotation: TextSelector\n")
            for path in (json_path, yaml_path):
                with self.subTest(path=path):
                    config = load_config(path)
                    self.assertEqual(config.default_set, "urn:test")
                    self.assertEqual(config.elements[0].annotation_kind, AnnotationKind.TEXT_SELECTOR)
            with self.assertRaises(ConfigError):
                load_config(os.path.join(tmp, "config.ini"))
            with self.assertRaises(ConfigError):
                load_config(os.path.join(tmp, "missing.toml"))

    def test_shipped_tei_config(self):
        path = os.path.join(os.path.dirname(standoff_mapper.__file__), "configs", "tei.toml")
        config = load_config(path)
        self.assertEqual(config.default_set, "http://www.tei-c.org/ns/1.0#")
        paths = [rule.path for rule in config.elements]
        self.assertIn("//tei:pb", paths)
        pb = config.elements[paths.index("//tei:pb")]
        self.assertTrue(pb.is_marker)
        self.assertEqual(pb.annotationdata[-1].key, "page")


if __name__ == '__main__':
    unittest.main()
