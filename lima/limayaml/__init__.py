"""The lima.yaml instance configuration: model, defaults, loading and validation."""