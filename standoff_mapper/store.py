"""
In-memory stand-off store.

The store holds text resources (plain text buffers) and annotations pointing into them
through selectors. A projection builds a StandoffResult which is committed in one go,
so a failing document never leaves partial data behind.

Serialised form (store.to_dict(), written by save()):

    {
        "resources": [{"id": ..., "filename": ..., "textfile": "<id>.txt", "length": ...}],
        "annotations": [
            {
                "id": ...,                      # optional
                "target": {"type": "TextSelector", "resource": ..., "begin": 0, "end": 5},
                "data": [{"set": ..., "key": ..., "value": ...}],
                "provenance": {"inputfile": ..., "xpath": ...}   # optional
            }
        ]
    }

Offsets are unicode codepoints (python string indices) into the resource text.
"""

import json
import logging
import os

from .errors import ConversionError


class TextSelector:
    __slots__ = ["resource", "begin", "end"]

    def __init__(self, resource, begin, end):
        self.resource = resource
        self.begin = begin
        self.end = end

    def __repr__(self):
        return f"TextSelector({self.resource!r}, {self.begin}, {self.end})"

    def to_dict(self):
        return {"type": "TextSelector", "resource": self.resource, "begin": self.begin, "end": self.end}


class ResourceSelector:
    __slots__ = ["resource"]

    def __init__(self, resource):
        self.resource = resource

    def __repr__(self):
        return f"ResourceSelector({self.resource!r})"

    def to_dict(self):
        return {"type": "ResourceSelector", "resource": self.resource}


class AnnotationData:
    __slots__ = ["set", "key", "value"]

    def __init__(self, set, key, value):
        self.set = set
        self.key = key
        self.value = value

    def __repr__(self):
        return f"AnnotationData({self.set!r}, {self.key!r}, {self.value!r})"

    def __eq__(self, other):
        return (isinstance(other, AnnotationData)
                and (self.set, self.key, self.value) == (other.set, other.key, other.value))

    def to_dict(self):
        return {"set": self.set, "key": self.key, "value": self.value}


class Annotation:
    def __init__(self, target, data=None, id=None, provenance=None):
        self.target = target
        self.data = list(data or [])
        self.id = id
        self.provenance = provenance

    def __repr__(self):
        return f"Annotation(id={self.id!r}, target={self.target!r}, data={self.data!r})"

    def get(self, key, set=None):
        """Value of the first data entry with that key (and set), None if there is none."""
        for data in self.data:
            if data.key == key and (set is None or data.set == set):
                return data.value
        return None

    def to_dict(self):
        d = {}
        if self.id is not None:
            d["id"] = self.id
        d["target"] = self.target.to_dict()
        d["data"] = [data.to_dict() for data in self.data]
        if self.provenance:
            d["provenance"] = self.provenance
        return d


class StandoffResult:
    """Output of the projection of one resource, not yet committed."""

    def __init__(self, resource_id, text, annotations, filename=None):
        self.resource_id = resource_id
        self.text = text
        self.annotations = annotations
        self.filename = filename

    def text_of(self, annotation):
        """Text covered by a TextSelector annotation (the whole text for a ResourceSelector)."""
        target = annotation.target
        if isinstance(target, TextSelector):
            return self.text[target.begin:target.end]
        return self.text


class StandoffStore:
    def __init__(self):
        self.resources = {}
        self.annotations = []
        self._ids = set()

    def add_resource(self, resource_id, text, filename=None):
        if resource_id in self.resources:
            raise ConversionError(f"resource {resource_id} already exists in the store")
        self.resources[resource_id] = {"text": text, "filename": filename}

    def _check(self, annotation, resources, ids):
        target = annotation.target
        if target.resource not in resources:
            raise ConversionError(f"annotation {annotation.id or ''} targets unknown resource {target.resource}")
        if isinstance(target, TextSelector):
            length = len(resources[target.resource]["text"])
            if not 0 <= target.begin <= target.end <= length:
                raise ConversionError(f"invalid offsets [{target.begin}, {target.end}) for resource "
                                      f"{target.resource} of length {length}")
        if annotation.id is not None:
            if annotation.id in ids:
                raise ConversionError(f"duplicate annotation id {annotation.id}")

    def annotate(self, annotation):
        self._check(annotation, self.resources, self._ids)
        if annotation.id is not None:
            self._ids.add(annotation.id)
        self.annotations.append(annotation)

    def commit(self, result):
        """Add a resource and all its annotations, nothing is added if any annotation is invalid."""
        if result.resource_id in self.resources:
            raise ConversionError(f"resource {result.resource_id} already exists in the store")
        resources = {result.resource_id: {"text": result.text, "filename": result.filename}}
        ids = set(self._ids)
        for annotation in result.annotations:
            self._check(annotation, resources, ids)
            if annotation.id is not None:
                ids.add(annotation.id)
        self.resources[result.resource_id] = resources[result.resource_id]
        self.annotations.extend(result.annotations)
        self._ids = ids
        logging.getLogger(__name__).info("committed resource %s: %d characters, %d annotations",
                                         result.resource_id, len(result.text), len(result.annotations))

    def to_dict(self):
        return {
            "resources": [
                {"id": resource_id, "filename": r["filename"], "textfile": f"{resource_id}.txt",
                 "length": len(r["text"])}
                for resource_id, r in self.resources.items()
            ],
            "annotations": [annotation.to_dict() for annotation in self.annotations],
        }

    def save(self, outdir, filename="annotations.json"):
        """Write one <resource>.txt per resource and the annotations as JSON, returns the JSON path."""
        os.makedirs(outdir, exist_ok=True)
        for resource_id, r in self.resources.items():
            with open(os.path.join(outdir, f"{resource_id}.txt"), "w", encoding="utf-8") as f:
                f.write(r["text"])
        path = os.path.join(outdir, filename)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
        return path
