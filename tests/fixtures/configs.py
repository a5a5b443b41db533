"""Sample configurations shared by the unit tests."""

from terraplan import ResourceSchema

RG = "azurerm_resource_group"
VNET = "azurerm_virtual_network"

SCHEMAS = {
    RG: ResourceSchema(RG, force_new=frozenset({"location"})),
    VNET: ResourceSchema(VNET, force_new=frozenset({"location"}), computed=frozenset({"guid"})),
}


def demo_config(**overrides):
    """Resource group plus a virtual network that references it."""
    config = {
        "variable": {"location": {"default": "westeurope"}},
        "resource": {
            RG: {"rg1": {"name": "rg-demo", "location": "${var.location}"}},
            VNET: {
                "net1": {
                    "name": "vnet-demo",
                    "location": "${azurerm_resource_group.rg1.location}",
                    "resource_group_name": "${azurerm_resource_group.rg1.name}",
                    "address_space": ["10.0.0.0/16"],
                }
            },
        },
    }
    for key, value in overrides.items():
        config["resource"][VNET]["net1"][key] = value
    return config
