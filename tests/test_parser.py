"""
AIDB Schema Parser Tests

Field grammar, entity directives, validation and backref derivation.
"""

import pytest


class TestFieldGrammar:
    """Test single field definitions."""

    def test_primitive_field(self):
        """Test a plain primitive."""
        from aidb.schema.parser import parse_field

        parsed = parse_field("title", "string")

        assert parsed.type == "string"
        assert not parsed.is_relation
        assert not parsed.is_array
        assert not parsed.is_optional

    def test_optional_and_array_modifiers(self):
        """Test ? and [] suffixes in either order."""
        from aidb.schema.parser import parse_field

        assert parse_field("score", "number?").is_optional
        tags = parse_field("tags", "string[]?")
        assert tags.is_array and tags.is_optional
        assert parse_field("tags", ["string"]).is_array
        assert parse_field("tags", "[string]").is_array

    def test_operators(self):
        """Test that each operator is recognized."""
        from aidb.schema.parser import parse_field
        from aidb.schema.types import RelationOperator

        assert parse_field("posts", "->Post").operator is RelationOperator.FORWARD_EXACT
        assert parse_field("author", "~>Author").operator is RelationOperator.FORWARD_FUZZY
        assert parse_field("topic", "<-Topic").operator is RelationOperator.BACKWARD_EXACT
        assert parse_field("category", "<~Category").operator is RelationOperator.BACKWARD_FUZZY

    def test_fuzzy_operator_is_not_read_as_exact(self):
        """Test that ~> wins over -> and <~ over <-."""
        from aidb.schema.parser import parse_field
        from aidb.schema.types import RelationOperator

        parsed = parse_field("ref", "Find the closest match ~>Doc")
        assert parsed.operator is RelationOperator.FORWARD_FUZZY
        assert parsed.prompt == "Find the closest match"
        assert parsed.related_type == "Doc"

    def test_prompt_prefix_and_array_brackets(self):
        """Test a prompt before the operator inside brackets."""
        from aidb.schema.parser import parse_field
        from aidb.schema.types import RelationOperator

        parsed = parse_field("chapters", "[Outline the chapters ->Chapter]")

        assert parsed.is_array
        assert parsed.is_relation
        assert parsed.operator is RelationOperator.FORWARD_EXACT
        assert parsed.prompt == "Outline the chapters"
        assert parsed.related_type == "Chapter"

    def test_threshold(self):
        """Test a field threshold."""
        from aidb.schema.parser import parse_field

        assert parse_field("author", "~>Author(0.9)").threshold == 0.9

    def test_threshold_out_of_range(self):
        """Test that thresholds outside [0, 1] are rejected."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_field

        with pytest.raises(SchemaValidationError):
            parse_field("author", "~>Author(1.5)")

    def test_union_types(self):
        """Test union members and per-member thresholds."""
        from aidb.schema.parser import parse_field

        parsed = parse_field("owner", "~>Person|Org(0.8)|Team")

        assert parsed.is_union
        assert parsed.union_types == ["Person", "Org", "Team"]
        assert parsed.union_thresholds == {"Org": 0.8}
        assert parsed.related_type == "Person"

    def test_union_helpers(self):
        """Test parse_union_types and parse_union_thresholds."""
        from aidb.schema.parser import parse_union_thresholds, parse_union_types

        assert parse_union_types("A|B(0.8)|C") == ["A", "B", "C"]
        assert parse_union_thresholds("A|B(0.8)") == {"B": 0.8}

    def test_bare_reference_is_forward_exact(self):
        """Test that a PascalCase reference without operator is owned."""
        from aidb.schema.parser import parse_field
        from aidb.schema.types import RelationOperator

        parsed = parse_field("topics", "[Topic.blog]")

        assert parsed.operator is RelationOperator.FORWARD_EXACT
        assert parsed.is_array
        assert parsed.related_type == "Topic"
        assert parsed.backref == "blog"

    def test_generation_prompt(self):
        """Test that free text becomes a prompt field."""
        from aidb.schema.parser import parse_field

        parsed = parse_field("tagline", "What is a catchy tagline?")

        assert parsed.is_prompt
        assert parsed.prompt == "What is a catchy tagline?"
        assert not parsed.is_optional


class TestEntityParsing:
    """Test entity-level directives."""

    def test_directives(self):
        """Test $fuzzyThreshold, $instructions, $context and $seed."""
        from aidb.schema.parser import parse_entity

        entity = parse_entity("Post", {
            "$fuzzyThreshold": 0.6,
            "$instructions": "Write about {topic}",
            "$context": ["topic"],
            "$seed": "fixed",
            "title": "string",
        })

        assert entity.fuzzy_threshold == 0.6
        assert entity.instructions == "Write about {topic}"
        assert entity.context_fields == ["topic"]
        assert entity.seed == "fixed"
        assert list(entity.fields) == ["title"]

    def test_bad_fuzzy_threshold(self):
        """Test that a non-numeric threshold directive fails."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_schema

        with pytest.raises(SchemaValidationError):
            parse_schema({"Post": {"$fuzzyThreshold": "high", "title": "string"}})


class TestSchemaValidation:
    """Test whole-schema validation."""

    def test_undefined_type(self):
        """Test that relations must point at declared types."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_schema

        with pytest.raises(SchemaValidationError) as exc_info:
            parse_schema({"Post": {"author": "->Author"}})

        assert any("Author" in e for e in exc_info.value.errors)

    def test_all_problems_reported(self):
        """Test that every problem is listed, not just the first."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_schema

        with pytest.raises(SchemaValidationError) as exc_info:
            parse_schema({"Post": {"author": "->Author", "editor": "~>Editor"}})

        assert len(exc_info.value.errors) == 2

    def test_undefined_union_members_dropped(self):
        """Test that a union keeps its declared members."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({
            "Post": {"owner": "~>Person|Ghost|Org"},
            "Person": {"name": "string"},
            "Org": {"name": "string"},
        })

        assert schema["Post"].fields["owner"].union_types == ["Person", "Org"]

    def test_self_reference_is_valid(self):
        """Test a self-referencing type."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({"Node": {"name": "string", "next": "->Node?"}})

        assert schema["Node"].fields["next"].related_type == "Node"

    def test_parsed_schema_passthrough(self):
        """Test that parsing a parsed schema returns it unchanged."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({"Post": {"title": "string"}})

        assert parse_schema(schema) is schema


class TestBackrefs:
    """Test inverse field derivation."""

    def test_explicit_backref(self, blog_schema):
        """Test that Type.backref creates the inverse field."""
        from aidb.schema.parser import parse_schema
        from aidb.schema.types import RelationOperator

        schema = parse_schema(blog_schema)
        inverse = schema["Topic"].fields["blog"]

        assert inverse.derived
        assert inverse.operator is RelationOperator.BACKWARD_EXACT
        assert inverse.related_type == "Blog"
        assert inverse.backref == "topics"
        # Array source -> single inverse
        assert not inverse.is_array
        assert inverse.is_optional

    def test_declared_backward_field_is_paired(self, blog_schema):
        """Test that a declared <- field is reused as the inverse."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema(blog_schema)

        assert schema["Topic"].fields["posts"].backref == "topic"
        assert schema["Post"].fields["topic"].backref == "posts"
        assert "topics" not in schema["Post"].fields

    def test_verb_backref(self):
        """Test that known verbs invert to their passive form."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({
            "Person": {"name": "string", "manages": "[->Team]"},
            "Team": {"name": "string"},
        })

        assert "managedBy" in schema["Team"].fields
        assert not schema["Team"].fields["managedBy"].is_array

    def test_type_name_backref(self):
        """Test the lower-camel fallback, pluralized for array inverses."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({
            "BlogPost": {"title": "string", "image": "->Image"},
            "Image": {"url": "url"},
        })

        assert schema["Image"].fields["blogPosts"].is_array
        assert schema["BlogPost"].fields["image"].backref == "blogPosts"

    def test_explicit_backref_collision(self):
        """Test that two explicit backrefs cannot share a name."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_schema

        with pytest.raises(SchemaValidationError):
            parse_schema({
                "Blog": {"cover": "->Image.owner"},
                "Post": {"hero": "->Image.owner"},
                "Image": {"url": "url"},
            })

    def test_explicit_backref_hits_scalar(self):
        """Test that an explicit backref may not replace a scalar."""
        from aidb.schema.errors import SchemaValidationError
        from aidb.schema.parser import parse_schema

        with pytest.raises(SchemaValidationError):
            parse_schema({
                "Blog": {"cover": "->Image.owner"},
                "Image": {"owner": "string"},
            })

    def test_derived_collision_is_skipped(self):
        """Test that a colliding derived backref is dropped, not fatal."""
        from aidb.schema.parser import parse_schema

        schema = parse_schema({
            "Author": {"name": "string", "book": "->Book"},
            "Book": {"title": "string", "authors": "string"},
        })

        assert schema["Book"].fields["authors"].type == "string"
        assert schema["Author"].fields["book"].backref is None
