"""
Unit tests for the multiview patch passes.

Tests:
- Shader classification
- Capability injection
- Entry point rewriting
- Matrix access relocation (field 0, field > 0, name clashes, failures)
"""

import pytest

from spirv_multiview.core import Instruction, InstructionSequence
from spirv_multiview.errors import ClassificationError, PreconditionError
from spirv_multiview.patcher import (
    MatrixLayout,
    ShaderFlavor,
    add_multiview_capability,
    classify,
    module_variables,
    patch_matrix_accesses,
    patch_vertex_shader,
    rewrite_entry_point,
)


def access_chains(sequence):
    return {inst.result: inst.operands for inst in sequence if inst.opcode == "OpAccessChain"}


# ============================================================================
# 1. Classification
# ============================================================================

def test_classify_vertex(vs_sequence):
    assert classify(vs_sequence) is ShaderFlavor.VERTEX


def test_classify_fixed_function(ff_text):
    assert classify(InstructionSequence.from_text(ff_text)) is ShaderFlavor.FIXED_FUNCTION_VERTEX


def test_classify_other_uses_first_string_only(vs_text):
    text = vs_text.replace('%1 = OpString "VS_test"', '%1 = OpString "PS_main"\n%2 = OpString "VS_late"')
    assert classify(InstructionSequence.from_text(text)) is ShaderFlavor.OTHER


def test_classify_without_marker_fails_without_mutation(vs_text):
    text = "\n".join(line for line in vs_text.splitlines() if "OpString" not in line)
    sequence = InstructionSequence.from_text(text)
    before = sequence.lines()
    with pytest.raises(ClassificationError):
        classify(sequence)
    assert sequence.lines() == before


# ============================================================================
# 2. Capability
# ============================================================================

def test_capability_inserted_first(vs_sequence):
    assert add_multiview_capability(vs_sequence) is True
    assert vs_sequence[0] == Instruction(None, "OpCapability", "MultiView")
    assert vs_sequence[1] == Instruction(None, "OpCapability", "Shader")


def test_capability_injection_is_idempotent(vs_sequence):
    add_multiview_capability(vs_sequence)
    once = vs_sequence.lines()
    assert add_multiview_capability(vs_sequence) is False
    assert vs_sequence.lines() == once


def test_capability_later_in_capability_section_is_not_duplicated(vs_text):
    text = vs_text.replace("OpCapability Shader", "OpCapability Shader\nOpCapability MultiView")
    sequence = InstructionSequence.from_text(text)
    assert add_multiview_capability(sequence) is False
    assert sum(1 for inst in sequence if inst.operands == "MultiView") == 1


# ============================================================================
# 3. Entry point
# ============================================================================

def test_entry_point_lists_all_module_variables(vs_sequence):
    entry = rewrite_entry_point(vs_sequence, include_view_index=False)
    assert entry.operands == 'Vertex %main "main" %c %in_pos %gl_Position'
    assert vs_sequence[vs_sequence.find("OpEntryPoint")] is entry


def test_entry_point_with_view_index_first(vs_sequence):
    entry = rewrite_entry_point(vs_sequence, include_view_index=True, view_index="%ViewIndex_1")
    assert entry.operands.split()[3] == "%ViewIndex_1"


def test_entry_point_ignores_function_local_variables(vs_sequence):
    local = Instruction("%tmp", "OpVariable", "%_ptr_Function_v4float Function")
    vs_sequence.insert(vs_sequence.index_of("%5") + 1, local)
    assert "%tmp" not in module_variables(vs_sequence)
    entry = rewrite_entry_point(vs_sequence, include_view_index=False)
    assert "%tmp" not in entry.operands


def test_entry_point_interface_is_superset(vs_sequence):
    patch_vertex_shader(vs_sequence, 0, 16)
    entry = vs_sequence[vs_sequence.find("OpEntryPoint")]
    listed = set(entry.operand_ids())
    assert set(module_variables(vs_sequence)) <= listed


def test_entry_point_missing_fails(vs_text):
    text = "\n".join(line for line in vs_text.splitlines() if "OpEntryPoint" not in line)
    with pytest.raises(PreconditionError):
        rewrite_entry_point(InstructionSequence.from_text(text))


# ============================================================================
# 4. Matrix accesses
# ============================================================================

def test_patch_field_zero_scenario(vs_sequence):
    before_names = vs_sequence.result_names()
    report = patch_vertex_shader(vs_sequence, field_index=0, base_offset=16)

    assert report.view_index == "%ViewIndex"
    assert report.row_indices == ["%i_f0_0", "%i_f0_1", "%i_f0_2", "%i_f0_3"]

    view_vars = [inst for inst in vs_sequence if inst.opcode == "OpVariable" and inst.operands.endswith("Input")
                 and inst.result == "%ViewIndex"]
    assert len(view_vars) == 1
    assert Instruction(None, "OpDecorate", "%ViewIndex BuiltIn ViewIndex") in list(vs_sequence)
    assert Instruction("%shader_data_begin", "OpConstant", "%uint 16") in list(vs_sequence)
    assert Instruction("%f_idx", "OpConstant", "%uint 0") in list(vs_sequence)

    label = vs_sequence.index_of("%5")
    body = [vs_sequence[label + offset].text() for offset in range(1, 8)]
    assert body == [
        "%vi = OpLoad %uint %ViewIndex",
        "%view_offset = OpIMul %uint %vi %uint_4",
        "%data_offset = OpIAdd %uint %shader_data_begin %view_offset",
        "%i_f0_0 = OpIAdd %uint %data_offset %uint_0",
        "%i_f0_1 = OpIAdd %uint %data_offset %uint_1",
        "%i_f0_2 = OpIAdd %uint %data_offset %uint_2",
        "%i_f0_3 = OpIAdd %uint %data_offset %uint_3",
    ]
    arithmetic = [inst for inst in vs_sequence if inst.opcode in {"OpIAdd", "OpIMul"}]
    assert len(arithmetic) == 6

    chains = access_chains(vs_sequence)
    for row in range(4):
        assert chains[f"%r{row}"] == f"%_ptr_Uniform_v4float %c %uint_1 %i_f0_{row}"
    assert sorted(report.rewritten_names) == ["%r0", "%r1", "%r2", "%r3"]

    new_names = set(report.inserted_names)
    assert not new_names & before_names


def test_patch_declarations_precede_first_function(vs_sequence):
    patch_vertex_shader(vs_sequence, 0, 16)
    function_at = vs_sequence.first_function
    assert vs_sequence[function_at].result == "%main"
    declared = [vs_sequence[function_at - offset].text() for offset in range(4, 0, -1)]
    assert declared == [
        "%_ptr_Input_uint = OpTypePointer Input %uint",
        "%ViewIndex = OpVariable %_ptr_Input_uint Input",
        "%shader_data_begin = OpConstant %uint 16",
        "%f_idx = OpConstant %uint 0",
    ]
    first_decoration = vs_sequence.find("OpDecorate")
    assert vs_sequence[first_decoration].operands == "%ViewIndex BuiltIn ViewIndex"


def test_patch_field_index_above_zero_uses_field_adds(vs_sequence):
    report = patch_vertex_shader(vs_sequence, field_index=1, base_offset=64)
    label = vs_sequence.index_of("%5")
    body = [vs_sequence[label + offset].text() for offset in range(4, 12)]
    assert body == [
        "%fadd_0 = OpIAdd %uint %uint_0 %f_idx",
        "%fadd_1 = OpIAdd %uint %uint_1 %f_idx",
        "%fadd_2 = OpIAdd %uint %uint_2 %f_idx",
        "%fadd_3 = OpIAdd %uint %uint_3 %f_idx",
        "%i_f1_0 = OpIAdd %uint %data_offset %fadd_0",
        "%i_f1_1 = OpIAdd %uint %data_offset %fadd_1",
        "%i_f1_2 = OpIAdd %uint %data_offset %fadd_2",
        "%i_f1_3 = OpIAdd %uint %data_offset %fadd_3",
    ]
    chains = access_chains(vs_sequence)
    # Rows 1..4 move; row 0 and the member-0 access stay put.
    assert chains["%r0"] == "%_ptr_Uniform_v4float %c %uint_1 %int_0"
    for row in range(1, 5):
        assert chains[f"%r{row}"] == f"%_ptr_Uniform_v4float %c %uint_1 %i_f1_{row - 1}"
    assert chains["%hd"] == "%_ptr_Uniform_v4float %c %int_0"
    assert report.row_indices == ["%i_f1_0", "%i_f1_1", "%i_f1_2", "%i_f1_3"]


@pytest.mark.parametrize("field_index", [0, 1, 2, 5])
def test_patch_leaves_other_rows_alone(vs_sequence, field_index):
    before = access_chains(vs_sequence)
    patch_vertex_shader(vs_sequence, field_index=field_index, base_offset=32)
    after = access_chains(vs_sequence)
    targeted = {f"%_ptr_Uniform_v4float %c %uint_1 %int_{field_index + row}" for row in range(4)}
    for name, operands in before.items():
        if operands not in targeted:
            assert after[name] == operands


def test_patch_picks_fresh_names_on_clash(vs_text):
    text = vs_text.replace("%pos", "%vi").replace("%sum", "%i_f0_0").replace("%x0", "%ViewIndex")
    sequence = InstructionSequence.from_text(text)
    before_names = sequence.result_names()
    report = patch_vertex_shader(sequence, 0, 16)
    assert report.view_index == "%ViewIndex_1"
    assert report.row_indices[0] == "%i_f0_0_1"
    assert not set(report.inserted_names) & before_names
    assert len(set(report.inserted_names)) == len(report.inserted_names)
    assert sequence[sequence.index_of("%r0")].operands.endswith("%i_f0_0_1")
    assert "%ViewIndex_1 = OpLoad" not in sequence.to_text()
    assert "%vi_1 = OpLoad %uint %ViewIndex_1" in sequence.to_text()


def test_patch_reuses_existing_input_uint_pointer(vs_text):
    text = vs_text.replace(
        "%_ptr_Uniform_v4float = OpTypePointer Uniform %v4float",
        "%_ptr_Uniform_v4float = OpTypePointer Uniform %v4float\n%ptr_in_uint = OpTypePointer Input %uint",
    )
    sequence = InstructionSequence.from_text(text)
    patch_vertex_shader(sequence, 0, 16)
    assert sum(1 for inst in sequence if inst.opcode == "OpTypePointer" and inst.operands == "Input %uint") == 1
    assert sequence[sequence.index_of("%ViewIndex")].operands == "%ptr_in_uint Input"


def test_patch_places_expression_after_function_locals(vs_text):
    text = vs_text.replace(
        "%5 = OpLabel",
        "%5 = OpLabel\n%tmp = OpVariable %_ptr_Function_v4float Function",
    ).replace(
        "%_ptr_Uniform_v4float = OpTypePointer Uniform %v4float",
        "%_ptr_Uniform_v4float = OpTypePointer Uniform %v4float\n"
        "%_ptr_Function_v4float = OpTypePointer Function %v4float",
    )
    sequence = InstructionSequence.from_text(text)
    patch_vertex_shader(sequence, 0, 16)
    label = sequence.index_of("%5")
    assert sequence[label + 1].result == "%tmp"
    assert sequence[label + 2].result == "%vi"


def test_patch_custom_layout(vs_text):
    text = vs_text.replace("%c", "%cbuf")
    sequence = InstructionSequence.from_text(text)
    layout = MatrixLayout(buffer="%cbuf")
    patch_vertex_shader(sequence, 0, 8, layout)
    assert sequence[sequence.index_of("%r2")].operands == "%_ptr_Uniform_v4float %cbuf %uint_1 %i_f0_2"


def test_patch_without_decoration_fails_untouched(vs_text):
    text = "\n".join(line for line in vs_text.splitlines() if "OpDecorate " not in line)
    sequence = InstructionSequence.from_text(text)
    before = sequence.lines()
    with pytest.raises(PreconditionError):
        patch_matrix_accesses(sequence, 0, 16)
    assert sequence.lines() == before


def test_patch_without_label_fails(vs_text):
    text = "\n".join(line for line in vs_text.splitlines() if "OpLabel" not in line)
    sequence = InstructionSequence.from_text(text)
    with pytest.raises(PreconditionError):
        patch_matrix_accesses(sequence, 0, 16)


def test_patch_requires_small_uint_constants(vs_text):
    text = "\n".join(line for line in vs_text.splitlines() if "%uint_4 = " not in line)
    sequence = InstructionSequence.from_text(text)
    before = sequence.lines()
    with pytest.raises(PreconditionError, match="%uint_4"):
        patch_matrix_accesses(sequence, 0, 16)
    assert sequence.lines() == before


def test_patch_rejects_negative_parameters(vs_sequence):
    with pytest.raises(PreconditionError):
        patch_matrix_accesses(vs_sequence, -1, 16)


def test_patch_twice_uses_new_names(vs_sequence):
    first = patch_vertex_shader(vs_sequence, 0, 16)
    second = patch_matrix_accesses(vs_sequence, 4, 16, view_index="%ViewIndex_2")
    assert first.row_indices == ["%i_f0_0", "%i_f0_1", "%i_f0_2", "%i_f0_3"]
    assert second == ["%i_f4_0", "%i_f4_1", "%i_f4_2", "%i_f4_3"]
    assert vs_sequence.defines("%shader_data_begin_1")
    assert vs_sequence[vs_sequence.index_of("%r4")].operands.endswith("%i_f4_0")
    assert vs_sequence[vs_sequence.index_of("%r0")].operands.endswith("%i_f0_0")
